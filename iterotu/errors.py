"""Exception taxonomy for iterotu.

Every fatal condition maps to a distinct process exit status so callers can
tell a bad configuration from corrupt input or a failing external tool.
"""

from typing import List, Optional


class IterotuError(Exception):
    """Base class for all fatal iterotu errors."""
    exit_code = 1


class ConfigurationError(IterotuError):
    """Missing or out-of-range parameter, detected before any processing."""
    exit_code = 2


class IntegrityError(IterotuError):
    """Malformed record, duplicate id, or reference to an unknown record."""
    exit_code = 3


class LibraryIntegrityError(IntegrityError):
    """Declared library size does not match the sum of counts read."""

    def __init__(self, library: str, declared: int, observed: int):
        self.library = library
        self.declared = declared
        self.observed = observed
        super().__init__(f"Library {library}: declared size {declared} "
                         f"but counts sum to {observed}")


class ExternalToolError(IterotuError):
    """An external capability exited non-zero or could not be started."""
    exit_code = 4

    def __init__(self, cmd: List[str], returncode: int,
                 stdout: Optional[str] = None, stderr: Optional[str] = None):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""
        super().__init__(f"{cmd[0]} failed with return code {returncode}: "
                         f"{self.stderr.strip()[-500:]}")


class ClusterOrderingError(UserWarning):
    """A fold target has a larger temporary id than the folded record.

    Reflects an occasional inconsistency between the clustering call and the
    member search. The offending hit is skipped and its abundance is counted
    as lost, so it is a warning rather than a fatal error.
    """


OrderingWarning = ClusterOrderingError
