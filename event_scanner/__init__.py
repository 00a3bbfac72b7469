"""
Event Scanner Package

Check-in scanning for events with scheduled sessions and booths, built
with Flask. Scans are classified against the session schedule and the
attendee's registrations; while the remote store is unreachable, actions
are queued locally and replayed when the connection returns.

Main Components:
- models: Data models for sessions, registrations, scans and queued actions
- classifier: Scan classification rules
- offline: Offline action queue, read caches and connectivity monitor
- sync: Sync reconciler replaying the offline queue
- services: Business logic for authentication, sessions, scans and registrations
- app: Main Flask application class

Usage:
    from event_scanner import create_app

    app = create_app()
    app.run()
"""

__version__ = "1.0.0"

# Import main components for easy access
from .app import create_app, create_development_app, create_production_app
from .classifier import Classification, classify_booth_scan, classify_session_scan
from .models import (
    ScanStatus,
    Session,
    SessionConfig,
    SessionRegistration,
    ScanRecord,
    PendingAction,
    ScannerContext,
    ScanResult,
    OperationResult,
    SyncReport,
)
from .offline import OfflineActionQueue, OfflineCache, ConnectivityMonitor
from .sync import SyncReconciler
from .services import AuthenticationService, SessionService, ScanService, RegistrationService
from .access_codes import AccessCodeService
from .repositories import RepositoryFactory
from .exceptions import (
    EventScannerException,
    AttendeeNotFoundException,
    AuthenticationFailedException,
    DataValidationException,
    DataAccessException,
    RemoteStoreException,
    RemoteUnavailableException,
    AccessCodeException,
)

__all__ = [
    # App factory functions
    'create_app',
    'create_development_app',
    'create_production_app',

    # Classification
    'Classification',
    'classify_booth_scan',
    'classify_session_scan',

    # Data models
    'ScanStatus',
    'Session',
    'SessionConfig',
    'SessionRegistration',
    'ScanRecord',
    'PendingAction',
    'ScannerContext',
    'ScanResult',
    'OperationResult',
    'SyncReport',

    # Offline and sync
    'OfflineActionQueue',
    'OfflineCache',
    'ConnectivityMonitor',
    'SyncReconciler',

    # Services
    'AuthenticationService',
    'SessionService',
    'ScanService',
    'RegistrationService',
    'AccessCodeService',

    # Repository factory
    'RepositoryFactory',

    # Exceptions
    'EventScannerException',
    'AttendeeNotFoundException',
    'AuthenticationFailedException',
    'DataValidationException',
    'DataAccessException',
    'RemoteStoreException',
    'RemoteUnavailableException',
    'AccessCodeException',
]
