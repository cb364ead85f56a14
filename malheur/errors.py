"""
Error types for Malheur.

Three failure classes cover the whole pipeline: bad configuration, bad or
missing data, and resource exhaustion. All of them derive from MalheurError
so callers can handle the family at once.
"""

from typing import Optional, Any, Dict


class MalheurError(Exception):
    """
    Base exception for all Malheur errors.

    Carries a structured ``details`` dict next to the message so the CLI
    and callers can report context without parsing strings.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize error.

        Args:
            message: Error message
            details: Optional structured error context
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(MalheurError):
    """
    Raised for invalid configuration.

    Covers unknown kernel/linkage names, thresholds outside the valid
    similarity range and tasks that lack a required output destination.
    """

    def __init__(self, message: str,
                 option: Optional[str] = None,
                 value: Any = None,
                 details: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration error.

        Args:
            message: Error message
            option: Dotted name of the offending option (e.g. 'cluster.linkage')
            value: Offending value
            details: Additional error context
        """
        super().__init__(message, details)
        self.option = option
        self.value = value

        self.details.update({
            'option': option,
            'value': value
        })


class DataError(MalheurError):
    """
    Raised when input data is absent, unreadable or unusable.

    An empty collection is a DataError for the kernel and cluster tasks.
    """

    def __init__(self, message: str,
                 path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        """
        Initialize data error.

        Args:
            message: Error message
            path: Input path involved, if any
            details: Additional error context
        """
        super().__init__(message, details)
        self.path = path

        self.details.update({
            'path': path
        })


class ResourceError(MalheurError):
    """
    Raised when a buffer cannot be allocated within the memory budget.

    The attempted size is always reported so operators can size their runs.
    """

    def __init__(self, message: str,
                 requested_bytes: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        """
        Initialize resource error.

        Args:
            message: Error message
            requested_bytes: Size of the failed allocation in bytes
            details: Additional error context
        """
        super().__init__(message, details)
        self.requested_bytes = requested_bytes

        self.details.update({
            'requested_bytes': requested_bytes
        })
