"""Error taxonomy and recoverable warnings.

Fatal problems are raised as :class:`IsolationError` subclasses. Recoverable
problems (a single file that failed to copy, a repair step that could not run)
are collected as :class:`StepWarning` records and returned next to the result,
so callers can inspect what was skipped.
"""

from dataclasses import dataclass
import logging


class IsolationError(RuntimeError):
    """Raised when an isolate cannot be produced."""


class NotFoundError(IsolationError):
    """Raised when a required input (trace, entrypoint, manifest) is missing."""


class MalformedInputError(IsolationError):
    """Raised when a trace or manifest does not have the expected shape."""


class ResolverError(IsolationError):
    """Raised when the client-reference resolver fails or prints garbage."""


class CommandError(IsolationError):
    """Raised when an external tool exits with a non-zero status."""


class ConventionsError(ValueError):
    """Raised when a conventions table cannot be resolved."""


PARTIAL_COPY: str = "partial_copy"
REPAIR_STEP: str = "repair_step"
IMPLICIT_DEPENDENCY: str = "implicit_dependency"
CLIENT_ASSETS: str = "client_assets"
MANIFEST: str = "manifest"
PATH_REWRITE: str = "path_rewrite"


@dataclass(frozen=True, slots=True)
class StepWarning:
    """A recoverable problem encountered while building an isolate.

    :ivar kind: One of the module-level kind constants (e.g. ``partial_copy``).
    :ivar subject: What the warning is about (usually a relative path or a step name).
    :ivar message: Human readable detail.
    """

    kind: str
    subject: str
    message: str

    def __str__(self) -> str:
        return f"[{self.kind}] {self.subject}: {self.message}"


def record_warning(
    warnings: list[StepWarning],
    *,
    kind: str,
    subject: str,
    message: str,
    logger: logging.Logger,
) -> StepWarning:
    """Append a warning to ``warnings`` and log it.

    :param warnings: Destination list.
    :param kind: Warning kind.
    :param subject: Warning subject.
    :param message: Warning detail.
    :param logger: Logger used for the side-channel message.
    :returns: The recorded warning.
    """

    w: StepWarning = StepWarning(kind=kind, subject=subject, message=message)
    warnings.append(w)
    logger.warning(f"route-isolator: warning: {w}")
    return w
