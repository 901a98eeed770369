# medgraph/core/exceptions.py
class PatientNotFoundException(Exception):
    """Raised when no patient exists for a given PID."""
    def __init__(self, message="Patient not found."):
        self.message = message
        super().__init__(self.message)


class PersistenceFailure(Exception):
    """Raised when a storage or database write fails."""
    def __init__(self, message="Failed to persist data."):
        self.message = message
        super().__init__(self.message)


class ExtractionError(Exception):
    """Base class for failures reported by the extraction gateway."""
    status_code = 500
    kind = "transient_failure"

    def __init__(self, message="Knowledge extraction failed."):
        self.message = message
        super().__init__(self.message)


class ContentRejected(ExtractionError):
    status_code = 400
    kind = "non_medical"

    def __init__(
        self,
        message="Non-medical data detected. Please upload medical records, patient data, "
        "prescriptions, lab results, or other healthcare-related information.",
    ):
        super().__init__(message)


class ExtractionTransientFailure(ExtractionError):
    status_code = 500
    kind = "transient_failure"


class RateLimited(ExtractionError):
    status_code = 429
    kind = "rate_limited"

    def __init__(self, message="Rate limit exceeded. Please try again later."):
        super().__init__(message)


class QuotaExhausted(ExtractionError):
    status_code = 402
    kind = "quota_exhausted"

    def __init__(self, message="Payment required. Please add credits to your workspace."):
        super().__init__(message)
