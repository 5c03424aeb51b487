def ok(data=None, message: str = "OK") -> dict:
    return {"success": True, "message": message, "data": data}


def iso(dt) -> str | None:
    return dt.isoformat() if dt else None
