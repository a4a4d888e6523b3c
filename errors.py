class ReplenishmentError(Exception):
    """Base class for every failure raised by the replenishment engine."""

    code = "replenishment_error"

    def to_dict(self):
        return {"error": self.code, "message": str(self)}


class InvalidForecastInput(ReplenishmentError):
    code = "invalid_forecast_input"

    def __init__(self, field, message=None):
        self.field = field
        super().__init__(message or f"invalid forecast input: {field}")

    def to_dict(self):
        return {**super().to_dict(), "field": self.field}


class _RemoteFailure(ReplenishmentError):
    """A non-success answer from the inventory platform."""

    def __init__(self, status, body, message=None):
        self.status = status
        self.body = body
        super().__init__(message or f"{self.code} ({status}): {body or 'no body'}")

    def to_dict(self):
        return {**super().to_dict(), "upstream_status": self.status, "body": self.body}


class AuthenticationFailed(_RemoteFailure):
    code = "authentication_failed"


class UpstreamUnavailable(_RemoteFailure):
    code = "upstream_unavailable"


class HeaderCreationFailed(_RemoteFailure):
    code = "header_creation_failed"


class LineAppendFailed(_RemoteFailure):
    code = "line_append_failed"

    def __init__(self, index, status, body):
        self.index = index
        super().__init__(status, body, f"line {index} append failed ({status}): {body or 'no body'}")

    def to_dict(self):
        return {**super().to_dict(), "index": self.index}


class AmbiguousOutcome(ReplenishmentError):
    """
    A request was sent but its outcome was never learned (timeout or dropped
    connection). The remote state must be reconciled before anything resumes.
    `index` is the line being appended, or None for the purchase header.
    """

    code = "ambiguous_outcome"

    def __init__(self, index, detail):
        self.index = index
        self.detail = detail
        where = "purchase header" if index is None else f"line {index}"
        super().__init__(f"outcome unknown for {where}: {detail}")

    def to_dict(self):
        return {**super().to_dict(), "index": self.index, "detail": self.detail}


class ProgressNotSaved(ReplenishmentError):
    """The placement ledger could not record a step; the run stops before the next remote call."""

    code = "progress_not_saved"

    def __init__(self, detail):
        self.detail = detail
        super().__init__(f"placement progress could not be saved: {detail}")

    def to_dict(self):
        return {**super().to_dict(), "detail": self.detail}


class PlacementInProgress(ReplenishmentError):
    code = "placement_in_progress"

    def __init__(self, detail="placement is being worked on by another request"):
        self.detail = detail
        super().__init__(detail)


def failure_from_dict(data):
    """Rebuild a stored placement failure from its to_dict() form."""
    if not data:
        return None
    code = data.get("error")
    if code == HeaderCreationFailed.code:
        return HeaderCreationFailed(data.get("upstream_status"), data.get("body"))
    if code == LineAppendFailed.code:
        return LineAppendFailed(data.get("index"), data.get("upstream_status"), data.get("body"))
    if code == AmbiguousOutcome.code:
        return AmbiguousOutcome(data.get("index"), data.get("detail"))
    if code == ProgressNotSaved.code:
        return ProgressNotSaved(data.get("detail"))
    raise ValueError(f"unknown placement failure: {code!r}")
