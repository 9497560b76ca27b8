from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # 令牌
    secret_key: str = "dev_secret"
    access_token_expire_minutes: int = 120

    # 远端存储；不配置时进入纯本地模式
    database_url: Optional[str] = None
    store_timeout_seconds: int = 10

    # 记住的会话 / 生物识别标记
    local_state_path: Optional[str] = ".toolcustody_state.json"

    # 账号
    password_mode: Literal["secure", "legacy"] = "secure"
    show_temp_password_in_app: bool = True
    temp_password_prefix: str = "TEMP-"
    min_password_length: int = 6
    biometric_prompt_delay: float = 1.5

    # 领用并发控制：True=版本号 CAS，False=最后写入为准
    custody_cas: bool = True

    # 启动播种
    seed_when_empty: bool = True
    couple_user_seed_to_tools: bool = False

    # 外部协作方
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    google_maps_api_key: Optional[str] = None
    address_country: str = "nz"
    collaborator_timeout_seconds: int = 10

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
