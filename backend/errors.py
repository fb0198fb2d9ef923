# errors.py — API error taxonomy
# Every rejection carries a machine-readable code and a localized message.
# main.py renders these as {"error": code, "message": ..., **extra, "request_id": ...}

from typing import Any, Dict, Optional

from fastapi import HTTPException


class APIError(HTTPException):
    status_code = 500
    code = "INTERNAL_ERROR"
    message = "שגיאת שרת פנימית"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        **extra: Any,
    ):
        self.code = code or self.code
        self.message = message or self.message
        self.extra: Dict[str, Any] = extra
        super().__init__(status_code=status_code or self.status_code, detail=self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        body.update(self.extra)
        return body


class Unauthorized(APIError):
    status_code = 401
    code = "Unauthorized"
    message = "נדרשת התחברות"


class AccountDisabled(APIError):
    status_code = 403
    code = "ACCOUNT_DISABLED"
    message = "החשבון שלך מושבת. פנה למנהל המערכת."


class OrganizationRequired(APIError):
    status_code = 403
    code = "ORGANIZATION_REQUIRED"
    message = "לא נבחר ארגון"


class Forbidden(APIError):
    status_code = 403
    code = "Forbidden"
    message = "אין לך הרשאה לבצע פעולה זו"


class NotFound(APIError):
    status_code = 404
    code = "NOT_FOUND"
    message = "הרשומה לא נמצאה"


class Conflict(APIError):
    status_code = 409
    code = "DUPLICATE_ERROR"
    message = "רשומה עם ערך זה כבר קיימת"


class ValidationFailed(APIError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "נתונים לא תקינים"


def integrity_field(exc: Exception) -> Optional[str]:
    """Best-effort column name from a unique-violation message (postgres + sqlite)."""
    text = str(getattr(exc, "orig", exc))
    # sqlite: "UNIQUE constraint failed: organizations.slug"
    if "UNIQUE constraint failed:" in text:
        raw = text.split("UNIQUE constraint failed:", 1)[1].split(",")
        return _pick_field([c.strip().split(".")[-1] for c in raw])
    # postgres: 'Key (organization_id, code)=(...) already exists.'
    if "Key (" in text:
        raw = text.split("Key (", 1)[1].split(")", 1)[0].split(",")
        return _pick_field([c.strip() for c in raw])
    return None


def _pick_field(columns) -> Optional[str]:
    # Composite keys are tenant-prefixed; report the column the caller controls
    named = [c for c in columns if c and c != "organization_id"]
    return named[0] if named else None
