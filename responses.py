"""
Response envelope and document serialization shared by all routes.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def serialize_doc(doc: Optional[Dict[str, Any]]):
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, datetime):
            out[k] = isoformat(v)
        else:
            out[k] = v
    return out


def pagination_meta(total: int, page: int, limit: int) -> Dict[str, int]:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def _now_iso() -> str:
    return isoformat(datetime.now(timezone.utc))


def success_response(status_code: int, message: str, data: Any = None, meta: Optional[dict] = None) -> JSONResponse:
    body = {
        "success": True,
        "status_code": status_code,
        "message": message,
        "data": data,
        "timestamp": _now_iso(),
    }
    if meta:
        body["meta"] = meta
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def error_response(status_code: int, message: str, errors: Optional[List[str]] = None) -> JSONResponse:
    body = {
        "success": False,
        "status_code": status_code,
        "message": message,
        "errors": errors,
        "timestamp": _now_iso(),
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))
