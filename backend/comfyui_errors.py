"""
Error taxonomy for ComfyUI job orchestration.

Every error raised by the client, tracker, materializer and collector
derives from ComfyUIError so batch code can catch one base class and
record the message on the failing piece.
"""

from typing import Any, Dict, Optional


class ComfyUIError(Exception):
    """Base class for orchestration errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SubmissionError(ComfyUIError):
    """The remote rejected a /prompt submission (bad node reference, validation failure)."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(
            f"ComfyUI rejected prompt ({status_code}): {body[:500]}",
            {"status": status_code, "body": body},
        )


class ComfyUIConnectionError(ComfyUIError):
    """Transport-level failure talking to the ComfyUI REST API."""


class OutputTimeoutError(ComfyUIError, TimeoutError):
    """History polling exceeded its deadline without seeing outputs."""

    def __init__(self, job_id: str, timeout: float):
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"Timeout waiting for ComfyUI outputs (job {job_id}, {timeout:g}s)")


class JobExecutionError(ComfyUIError):
    """The remote reported the job itself as failed."""

    def __init__(self, job_id: str, messages: Any = None):
        self.job_id = job_id
        self.messages = messages or []
        text = "; ".join(str(m) for m in self.messages) if self.messages else "Unknown error"
        super().__init__(f"Job {job_id} failed: {text}", {"messages": self.messages})


class ChannelConnectError(ComfyUIError):
    """The event channel handshake failed."""


class ChannelAmbiguousCompletion(ComfyUIError):
    """
    The event channel closed before the job's completion sentinel arrived.

    Only raised on request (TrackingOutcome.raise_if_unconfirmed); the
    default handling reports the outcome as unconfirmed instead.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Event channel closed before job {job_id} reported completion")


class NoArtifactsError(ComfyUIError):
    """The job completed but produced zero output artifacts."""

    def __init__(self, job_id: Optional[str] = None):
        self.job_id = job_id
        super().__init__("No image generated")


class TemplateError(ComfyUIError):
    """A workflow template could not be read or parsed."""
