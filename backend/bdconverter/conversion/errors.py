"""Conversion error taxonomy.

``InputError`` rejects a request before any task exists. ``ResolutionError``,
``ExternalToolError`` and ``AssemblyError`` fail only the task that raised them.
``TransformError`` is recovered per page and never fails a task.
"""
from typing import Optional


class ConversionError(Exception):
    """Base exception for all conversion errors."""

    default_message = "Conversion failed."

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InputError(ConversionError):
    """Raised when a request carries no files, unsupported files or invalid options."""

    default_message = "Invalid conversion request."


class ResolutionError(ConversionError):
    """Raised when a task's source resolves to no usable pages."""

    default_message = "Empty result: no pages in range."


class ExternalToolError(ConversionError):
    """Raised on non-zero exit, timeout or missing binary of an external tool."""

    default_message = "External tool failed."

    def __init__(
        self,
        tool: str,
        message: str = "",
        returncode: Optional[int] = None,
        diagnostics: str = "",
    ) -> None:
        self.tool = tool
        self.returncode = returncode
        self.diagnostics = (diagnostics or "").strip()
        text = message or (
            f"{tool} exited with status {returncode}" if returncode is not None else f"{tool} failed"
        )
        if self.diagnostics:
            text = f"{text}\nSTDERR: {self.diagnostics}"
        super().__init__(text)


class TransformError(ConversionError):
    """Raised by a single page transform step."""

    default_message = "Page transform failed."


class AssemblyError(ConversionError):
    """Raised when the expected output artifact is missing after packing."""

    default_message = "Output archive was not produced."


class BatchError(ConversionError):
    """Raised when the batch handler itself fails; carries the partial summary."""

    default_message = "Batch conversion failed."

    def __init__(self, message: str = "", summary=None) -> None:
        super().__init__(message)
        self.summary = summary
