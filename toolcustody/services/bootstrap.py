"""
启动时一次性对齐：远端 -> 内存工作集 -> 记住的会话。
尽力而为，不重试；任何异常只记日志，保留已组装好的部分。
"""
import logging
from typing import Callable, Optional, Sequence

from toolcustody.seed import default_tools, default_users
from toolcustody.services.accounts import restore_session
from toolcustody.store import STORE_ABSENT, StoreError
from toolcustody.workspace import Workspace

logger = logging.getLogger(__name__)


def _needs_seed(fetched, seed_when_empty: bool) -> bool:
    if fetched is STORE_ABSENT:
        return True
    return seed_when_empty and not fetched


def _seed(write: Callable[[Sequence], object], items: Sequence, what: str) -> Optional[list]:
    """回写默认数据；返回落库后的记录，未写入时返回 None。"""
    try:
        result = write(items)
    except StoreError as e:
        logger.error("seeding %s failed: %s", what, e)
        return None
    if result is STORE_ABSENT:
        logger.info("remote store absent, default %s kept local only", what)
        return None
    logger.info("seeded %d %s into the remote store", len(items), what)
    return list(result)


def bootstrap(ws: Workspace) -> None:
    settings = ws.settings
    try:
        ws.store.create_schema()

        tools = ws.store.fetch_all_tools()
        tools_seeded = _needs_seed(tools, settings.seed_when_empty)
        if tools_seeded:
            logger.info("no remote tools, using built-in defaults")
            tools = default_tools()
            tools = _seed(lambda items: ws.store.upsert_tools(items, with_logs=True), tools, "tools") or tools
        ws.load(tools=tools)

        users = ws.store.fetch_all_users()
        if _needs_seed(users, settings.seed_when_empty):
            logger.info("no remote users, using built-in defaults")
            users = default_users(settings.password_mode)
            # 旧客户端只在工具也刚播种时才回写用户
            if settings.couple_user_seed_to_tools and not tools_seeded:
                logger.info("tools were not seeded, skipping user seed write")
            else:
                users = _seed(ws.store.upsert_users, users, "users") or users
        ws.load(users=users)

        user = restore_session(ws)
        if user is not None:
            logger.info("restored remembered session for user %s", user.id)
    except Exception:
        logger.exception("bootstrap failed, continuing with partial local state")

    logger.info(
        "bootstrap done: %d tools, %d users, store=%s",
        len(ws.tools),
        len(ws.users),
        "remote" if ws.store.configured else "local",
    )
