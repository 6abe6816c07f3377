from __future__ import annotations


class PlotBurnError(Exception):
    """Base error for the enrichment service."""


class AlreadyRunning(PlotBurnError):
    """Raised when a named job already has a running row."""

    def __init__(self, job_name: str, run_id: int | None = None) -> None:
        self.job_name = job_name
        self.run_id = run_id
        suffix = f" (run_id: {run_id})" if run_id is not None else ""
        super().__init__(f"job '{job_name}' is already running{suffix}")


class ProviderError(PlotBurnError):
    """Raised when an external provider call fails."""


class ProviderTimeout(ProviderError):
    """Raised when an external provider does not answer within its timeout."""


class ProviderHTTPError(ProviderError):
    """Raised when an external provider answers with a non-2xx status."""

    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self.body = body
        super().__init__(f"http_error {status}: {body[:300]}")


class EvidenceFetchFailure(PlotBurnError):
    """Raised when the evidence (search) stage fails."""


class ExtractionFailure(PlotBurnError):
    """Raised when the extraction stage fails."""


class ExtractionParseFailure(ExtractionFailure):
    """Raised when extraction output does not match the extraction schema."""

    def __init__(self, message: str, raw: str | None = None) -> None:
        self.raw = raw
        super().__init__(message)


class GenerationFailure(PlotBurnError):
    """Raised when the roast generation stage fails."""


class GenerationParseFailure(GenerationFailure):
    """Raised when generated output does not match the roast schema."""

    def __init__(self, message: str, raw: str | None = None) -> None:
        self.raw = raw
        super().__init__(message)


class PersistenceFailure(PlotBurnError):
    """Raised when a storage write fails for one movie."""


class NotFound(PlotBurnError):
    """Raised on the read path when a movie, truth or roast is absent."""
