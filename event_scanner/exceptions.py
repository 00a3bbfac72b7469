"""
Custom Exceptions for Event Scanner

This module defines the exception hierarchy used across the scanner.
Services convert these into typed results at their boundary; the Flask
application maps any that escape onto JSON error responses.
"""


class EventScannerException(Exception):
    """
    Base exception for the Event Scanner application

    All custom exceptions in the scanner inherit from this class so that
    a single error handler can catch them.
    """

    def __init__(self, message: str, error_code: str = None):
        """
        Initialize Event Scanner exception

        Args:
            message: Human-readable error message
            error_code: Optional error code for programmatic handling
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code

    def __str__(self) -> str:
        """String representation of the exception"""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message


class AttendeeNotFoundException(EventScannerException):
    """Raised when an attendee is not registered for the event"""

    def __init__(self, attendee_id: str, event_id: str = None):
        if event_id:
            message = f"Attendee '{attendee_id}' not found in event '{event_id}'"
        else:
            message = f"Attendee '{attendee_id}' not found"
        super().__init__(message, "ATTENDEE_NOT_FOUND")
        self.attendee_id = attendee_id
        self.event_id = event_id


class AuthenticationFailedException(EventScannerException):
    """
    Raised when operator authentication fails

    Thrown when scanner operator credentials are missing or invalid.
    """

    def __init__(self, operator_id: str = None):
        """
        Initialize authentication failed exception

        Args:
            operator_id: Optional operator ID that failed authentication
        """
        if operator_id:
            message = f"Authentication failed for operator '{operator_id}'"
        else:
            message = "Authentication failed - invalid credentials"
        super().__init__(message, "AUTH_FAILED")
        self.operator_id = operator_id


class DataValidationException(EventScannerException):
    """
    Raised when data validation fails

    Thrown for missing required fields in caller input and for remote
    rows that do not match the expected shape.
    """

    def __init__(self, field_name: str, validation_error: str):
        """
        Initialize data validation exception

        Args:
            field_name: Name of the field that failed validation
            validation_error: Description of the validation error
        """
        message = f"Validation error in field '{field_name}': {validation_error}"
        super().__init__(message, "VALIDATION_ERROR")
        self.field_name = field_name
        self.validation_error = validation_error


class DataAccessException(EventScannerException):
    """
    Raised when data access operations fail

    Thrown when reading from or writing to the local durable store
    (JSON file, Redis) fails.
    """

    def __init__(self, operation: str, details: str, error_code: str = "DATA_ACCESS_ERROR"):
        """
        Initialize data access exception

        Args:
            operation: The operation that failed (e.g., 'read', 'write')
            details: Detailed error information
            error_code: Error code, overridden by subclasses
        """
        message = f"Data access error during {operation}: {details}"
        super().__init__(message, error_code)
        self.operation = operation
        self.details = details


class RemoteStoreException(DataAccessException):
    """Raised when a remote table read or write fails"""

    def __init__(self, operation: str, table: str, details: str):
        super().__init__(f"{operation} on '{table}'", details, "REMOTE_STORE_ERROR")
        self.table = table


class RemoteUnavailableException(RemoteStoreException):
    """
    Raised when the remote store cannot be reached at all

    Distinguished from RemoteStoreException so that callers can fall back
    to offline mode instead of reporting a failed write.
    """

    def __init__(self, table: str = "*", details: str = "remote store unreachable"):
        super().__init__("connect", table, details)
        self.error_code = "REMOTE_UNAVAILABLE"


class AccessCodeException(EventScannerException):
    """Raised when an access code cannot be generated or is invalid"""

    def __init__(self, reason: str, code: str = None):
        message = f"Access code error: {reason}"
        super().__init__(message, "ACCESS_CODE_ERROR")
        self.reason = reason
        self.code = code
