"""
Error taxonomy for the skip-trace engine.

Guardrail denials are not exceptions — they come back from admit() as an
Admission with a reason, and the item returns to the queue. Exceptions here
are the failures that surface to a caller.
"""

# Guardrail denial reasons
BUDGET_EXCEEDED = 'budget_exceeded'
RATE_LIMITED = 'rate_limited'
CIRCUIT_OPEN = 'circuit_open'

DENIAL_REASONS = (BUDGET_EXCEEDED, RATE_LIMITED, CIRCUIT_OPEN)

# Error kinds recorded on items / returned by routes
VALIDATION = 'validation'
PROVIDER_ERROR = 'provider_error'
CONFLICT = 'conflict'
NOT_FOUND = 'not_found'


class SkipTraceError(Exception):
    """Base class for engine errors."""
    kind = 'error'


class ValidationError(SkipTraceError):
    """Malformed lead input — rejected before a RunItem exists, never retried."""
    kind = VALIDATION

    def __init__(self, message, rejected=None):
        self.rejected = rejected or []
        super().__init__(message)


class RunNotFoundError(SkipTraceError):
    """Unknown run id on a status/report/pause/resume query."""
    kind = NOT_FOUND

    def __init__(self, run_id):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class ProviderError(SkipTraceError):
    """Non-success response (or transport failure) from a lookup provider."""
    kind = PROVIDER_ERROR

    def __init__(self, provider, message, status_code=None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")
