from typing import Any, Dict, Optional

class BillingError(Exception):
    status_code = 400
    code = "billing_error"

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.message = message or self.code.replace("_", " ").capitalize()
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"ok": False, "error": {"code": self.code, "message": self.message}}
        if self.details:
            payload["error"]["details"] = self.details
        return payload


class Unauthorized(BillingError):       status_code = 401; code = "unauthorized"
class NotFound(BillingError):           status_code = 404; code = "not_found"
class AccountNotFound(NotFound):        code = "account_not_found"
class SessionNotFound(NotFound):        code = "session_not_found"
class InsufficientFunds(BillingError):  status_code = 402; code = "insufficient_funds"
class LimitReached(BillingError):       status_code = 402; code = "limit_reached"
class InvalidSignature(BillingError):   status_code = 401; code = "invalid_signature"
class ReplayedTimestamp(BillingError):  status_code = 401; code = "replayed_timestamp"
class DuplicateEvent(BillingError):     status_code = 200; code = "duplicate_event"
class MalformedPayload(BillingError):   status_code = 400; code = "malformed_payload"
class SessionExpired(BillingError):     status_code = 410; code = "session_expired"
class DeductionRace(BillingError):      status_code = 409; code = "deduction_race"
class ServerError(BillingError):        status_code = 500; code = "server_error"
