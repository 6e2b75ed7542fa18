from __future__ import annotations

from fastapi import Header, HTTPException


def current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    # sessions are resolved upstream; the gateway forwards the user id
    clean = (x_user_id or "").strip()
    if not clean:
        raise HTTPException(status_code=401, detail="missing user")
    return clean
