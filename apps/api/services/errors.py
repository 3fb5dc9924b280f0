"""Error helpers shared by admission paths."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException


def reject(
    status_code: int,
    code: str,
    message: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    **extra: Any,
) -> HTTPException:
    """Build an HTTPException whose detail carries a machine-readable reason code."""
    detail: Dict[str, Any] = {"code": code, "message": message}
    detail.update(extra)
    return HTTPException(status_code=status_code, detail=detail, headers=headers)
