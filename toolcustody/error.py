from typing import NoReturn

from fastapi import HTTPException


def abort(status_code: int, code: str, message: str) -> NoReturn:
    raise HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _auth_401(code: str, message: str) -> HTTPException:
    # 保留 WWW-Authenticate，符合 Bearer 规范
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )
