"""
Main Application Module for Event Scanner

This module contains the Flask application class that wires the stores,
services and sync reconciler together and exposes them as a JSON API
for scanner devices.
"""

import json
import logging
from datetime import datetime
from typing import Callable, Optional

from flask import Flask, request, session, jsonify

from .access_codes import AccessCodeService
from .config import load_config
from .email_provider import EmailProvider, LoggingEmailProvider
from .exceptions import (
    EventScannerException,
    AttendeeNotFoundException,
    AuthenticationFailedException,
    DataValidationException,
    RemoteUnavailableException,
)
from .logging_config import setup_logging
from .models import OperationResult, ScannerContext, utcnow
from .offline import ConnectivityMonitor, OfflineActionQueue, OfflineCache
from .remote import InMemoryRemoteStore, RemoteStore, SheetsRemoteStore
from .repositories import LocalStore, OperatorRepository, RepositoryFactory
from .services import AuthenticationService, RegistrationService, ScanService, SessionService
from .sync import SyncReconciler

logger = logging.getLogger(__name__)


class EventScannerApp:
    """
    Main Flask application class for Event Scanner

    Stores and services are created from the configuration unless they
    are passed in explicitly, which is how tests inject in-memory
    backends and a fixed clock.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        remote: Optional[RemoteStore] = None,
        local_store: Optional[LocalStore] = None,
        operator_repository: Optional[OperatorRepository] = None,
        email_provider: Optional[EmailProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the Event Scanner application

        Args:
            config: Optional configuration overrides
            remote: Remote store, built from config when omitted
            local_store: Durable local store for the offline queue and caches
            operator_repository: Operator credentials source
            email_provider: Delivery provider for access codes
            clock: Source of the current time
        """
        self.app = Flask(__name__)
        self.config = load_config(config)
        self._configure_app()

        self.remote = remote if remote is not None else self._create_remote_store()
        self.local_store = local_store if local_store is not None else self._create_local_store()
        self.operator_repository = operator_repository or OperatorRepository(self.config['OPERATORS_FILE'])

        self.monitor = ConnectivityMonitor(self.remote)
        self.queue = OfflineActionQueue(self.local_store, clock)
        self.cache = OfflineCache(self.local_store, clock, self.config['CACHE_EXPIRATION_HOURS'])
        self.cache.remove_expired()

        self.auth_service = AuthenticationService(self.operator_repository)
        self.session_service = SessionService(
            self.remote, self.cache, self.monitor, clock, self.config['GRACE_PERIOD_MINUTES']
        )
        self.scan_service = ScanService(
            self.remote, self.queue, self.session_service, self.monitor, clock,
            self.config['SCAN_COOLDOWN_MINUTES'],
        )
        self.registration_service = RegistrationService(
            self.remote, self.queue, self.session_service, self.monitor, clock
        )
        self.access_code_service = AccessCodeService(
            self.remote, email_provider or LoggingEmailProvider(), clock
        )

        self.reconciler = SyncReconciler(
            self.queue,
            self.remote,
            self.monitor,
            max_attempts=self.config['SYNC_MAX_ATTEMPTS'],
            backoff_base_seconds=self.config['SYNC_BACKOFF_BASE_SECONDS'],
            backoff_max_seconds=self.config['SYNC_BACKOFF_MAX_SECONDS'],
            clock=clock,
            grace_minutes=self.config['GRACE_PERIOD_MINUTES'],
        )
        self.reconciler.add_refresh_callback(self.session_service.refresh_cached_events)

        self._register_routes()
        self._register_error_handlers()

    def _configure_app(self) -> None:
        """Apply Flask settings from the loaded configuration"""
        self.app.secret_key = self.config['SECRET_KEY']
        self.app.permanent_session_lifetime = self.config['PERMANENT_SESSION_LIFETIME']
        self.app.config['DEBUG'] = self.config['DEBUG']

    def _create_remote_store(self) -> RemoteStore:
        remote_type = str(self.config['REMOTE_STORE']).lower()
        if remote_type == 'memory':
            return InMemoryRemoteStore()
        if remote_type == 'sheets':
            raw = self.config['GOOGLE_SERVICE_ACCOUNT_JSON']
            if not raw:
                raise DataValidationException("GOOGLE_SERVICE_ACCOUNT_JSON", "required for the sheets remote store")
            service_account_info = json.loads(raw) if isinstance(raw, str) else raw
            return SheetsRemoteStore.from_service_account_info(service_account_info, self.config['SPREADSHEET_NAME'])
        raise ValueError(f"Unsupported remote store type: {remote_type}")

    def _create_local_store(self) -> LocalStore:
        return RepositoryFactory.create_store(
            str(self.config['LOCAL_STORE']),
            file_path=self.config['LOCAL_STORE_PATH'],
            host=self.config['REDIS_HOST'],
            port=self.config['REDIS_PORT'],
            namespace=self.config['REDIS_NAMESPACE'],
        )

    def _register_routes(self) -> None:
        """Register all Flask routes"""
        self.app.add_url_rule("/login", "login", self.login, methods=["POST"])
        self.app.add_url_rule("/logout", "logout", self.logout)

        self.app.add_url_rule("/events/<event_id>/scans", "record_scan", self.record_scan, methods=["POST"])
        self.app.add_url_rule("/events/<event_id>/scans", "list_scans", self.list_scans, methods=["GET"])
        self.app.add_url_rule("/scans/<scan_id>", "delete_scan", self.delete_scan, methods=["DELETE"])

        self.app.add_url_rule(
            "/events/<event_id>/registrations", "register", self.register, methods=["POST"]
        )
        self.app.add_url_rule(
            "/registrations/<registration_id>", "cancel_registration", self.cancel_registration,
            methods=["DELETE"],
        )
        self.app.add_url_rule("/events/<event_id>/check-ins", "check_in", self.check_in, methods=["POST"])

        self.app.add_url_rule("/events/<event_id>/sessions", "list_sessions", self.list_sessions)
        self.app.add_url_rule("/events/<event_id>/sessions/active", "active_session", self.active_session)
        self.app.add_url_rule(
            "/sessions/<session_id>/config", "save_session_config", self.save_session_config, methods=["PUT"]
        )

        self.app.add_url_rule("/sync/status", "sync_status", self.sync_status)
        self.app.add_url_rule("/sync", "sync_now", self.sync_now, methods=["POST"])

        self.app.add_url_rule(
            "/events/<event_id>/access-codes", "send_access_code", self.send_access_code, methods=["POST"]
        )
        self.app.add_url_rule(
            "/access-codes/validate", "validate_access_code", self.validate_access_code, methods=["POST"]
        )

        self.app.before_request(self._probe_connectivity)

    def _register_error_handlers(self) -> None:
        """Register error handlers for custom exceptions"""

        @self.app.errorhandler(AuthenticationFailedException)
        def handle_auth_failed(e):
            return jsonify({"success": False, "error": e.error_code, "message": e.message}), 401

        @self.app.errorhandler(AttendeeNotFoundException)
        def handle_attendee_not_found(e):
            return jsonify({"success": False, "error": e.error_code, "message": e.message}), 404

        @self.app.errorhandler(DataValidationException)
        def handle_validation_error(e):
            return jsonify({"success": False, "error": e.error_code, "message": e.message}), 400

        @self.app.errorhandler(RemoteUnavailableException)
        def handle_remote_unavailable(e):
            self.monitor.mark_offline()
            return jsonify({"success": False, "error": e.error_code, "message": e.message}), 503

        @self.app.errorhandler(EventScannerException)
        def handle_event_scanner_exception(e):
            logger.error("Unhandled application error: %s", e)
            return jsonify({"success": False, "error": e.error_code, "message": e.message}), 500

    def _probe_connectivity(self) -> None:
        # Reconnecting fires the reconciler through the monitor listener
        if not self.monitor.is_online:
            self.monitor.check()

    def _payload(self) -> dict:
        payload = request.get_json(silent=True)
        if payload is None:
            payload = request.form.to_dict()
        return payload

    def _is_authenticated(self) -> bool:
        """
        Check if current operator is authenticated

        Returns:
            True if operator is authenticated
        """
        operator_id = session.get("operator_id")
        if not operator_id:
            return False
        return self.auth_service.is_valid_operator(operator_id)

    def _context(self, event_id: Optional[str]) -> ScannerContext:
        return ScannerContext(
            operator_id=session["operator_id"],
            event_id=event_id,
            device_id=request.headers.get("X-Device-Id"),
        )

    def _unauthorized(self):
        return jsonify({"success": False, "message": "Authentication required"}), 401

    @staticmethod
    def _result_response(result: OperationResult, success_status: int = 200):
        return jsonify(result.to_dict()), success_status if result.success else 400

    def login(self):
        """
        Login route for operator authentication

        Returns:
            JSON with the operator ID; failures go through the 401 handler
        """
        payload = self._payload()
        operator_id = str(payload.get("operator_id", "")).strip()
        password = str(payload.get("password", "")).strip()

        operator = self.auth_service.authenticate(operator_id, password)
        session.permanent = True
        session["operator_id"] = operator.operator_id
        logger.info("Operator %s logged in", operator.operator_id)
        return jsonify({"success": True, "operator": operator.to_dict()})

    def logout(self):
        session.pop("operator_id", None)
        return jsonify({"success": True})

    def record_scan(self, event_id: str):
        """
        Scan route - records and classifies one attendee scan

        Returns:
            201 with the ScanResult, 202 when queued offline, 400 on failure
        """
        if not self._is_authenticated():
            return self._unauthorized()

        payload = self._payload()
        result = self.scan_service.record_scan(
            self._context(event_id),
            str(payload.get("attendee_id") or "").strip(),
            booth_id=payload.get("booth_id") or None,
            session_id=payload.get("session_id") or None,
            notes=payload.get("notes") or None,
        )
        return self._result_response(result, 202 if result.was_offline else 201)

    def list_scans(self, event_id: str):
        if not self._is_authenticated():
            return self._unauthorized()
        scans = self.scan_service.list_scans(self._context(event_id))
        return jsonify({"success": True, "scans": [scan.to_dict() for scan in scans]})

    def delete_scan(self, scan_id: str):
        if not self._is_authenticated():
            return self._unauthorized()
        return self._result_response(self.scan_service.delete_scan(scan_id))

    def register(self, event_id: str):
        if not self._is_authenticated():
            return self._unauthorized()
        payload = self._payload()
        result = self.registration_service.register(
            self._context(event_id),
            str(payload.get("attendee_id") or "").strip(),
            str(payload.get("session_id") or "").strip(),
            expected_booth_id=payload.get("expected_booth_id") or None,
        )
        return self._result_response(result, 201)

    def cancel_registration(self, registration_id: str):
        if not self._is_authenticated():
            return self._unauthorized()
        return self._result_response(self.registration_service.cancel(registration_id))

    def check_in(self, event_id: str):
        if not self._is_authenticated():
            return self._unauthorized()
        payload = self._payload()
        result = self.registration_service.check_in(
            self._context(event_id), str(payload.get("attendee_id") or "").strip()
        )
        return self._result_response(result)

    def list_sessions(self, event_id: str):
        if not self._is_authenticated():
            return self._unauthorized()
        sessions = self.session_service.list_sessions(self._context(event_id))
        return jsonify({"success": True, "sessions": [s.to_dict() for s in sessions]})

    def active_session(self, event_id: str):
        """Session currently running, starting soon or ending soon"""
        if not self._is_authenticated():
            return self._unauthorized()
        status = self.session_service.active_session(self._context(event_id))
        return jsonify({"success": True, **status.to_dict()})

    def save_session_config(self, session_id: str):
        if not self._is_authenticated():
            return self._unauthorized()
        return self._result_response(self.session_service.save_session_config(session_id, self._payload()))

    def sync_status(self):
        """
        Sync status route

        Returns:
            JSON with pending count, syncing flag and online flag
        """
        if not self._is_authenticated():
            return self._unauthorized()
        return jsonify({
            "pending": self.queue.count(),
            "syncing": self.reconciler.is_syncing,
            "online": self.monitor.is_online,
        })

    def sync_now(self):
        """Manual "sync now": probe the connection and replay, ignoring backoff and retry limits"""
        if not self._is_authenticated():
            return self._unauthorized()
        self.monitor.check()
        report = self.reconciler.sync(force=True)
        return jsonify(report.to_dict())

    def send_access_code(self, event_id: str):
        if not self._is_authenticated():
            return self._unauthorized()
        payload = self._payload()
        result = self.access_code_service.create_and_send(
            str(payload.get("email") or "").strip(),
            str(payload.get("attendee_id") or "").strip(),
            event_id,
        )
        return self._result_response(result, 201)

    def validate_access_code(self):
        """Attendee portal login; does not require an operator session"""
        payload = self._payload()
        result = self.access_code_service.validate_code(str(payload.get("code") or "").strip())
        return jsonify(result.to_dict()), 200 if result.success else 401

    def run(self, host: str = '127.0.0.1', port: int = 5000, debug: bool = None) -> None:
        """
        Run the Flask application

        Args:
            host: Host address to bind to
            port: Port number to listen on
            debug: Debug mode (overrides config if provided)
        """
        if debug is not None:
            self.app.config['DEBUG'] = debug

        self.app.run(host=host, port=port, debug=self.app.config['DEBUG'])


def create_app(config: Optional[dict] = None, **kwargs) -> EventScannerApp:
    """
    Factory function to create and configure the application

    Args:
        config: Optional configuration overrides
        **kwargs: Stores, providers or clock passed to EventScannerApp

    Returns:
        Configured EventScannerApp instance
    """
    return EventScannerApp(config, **kwargs)


def create_development_app() -> EventScannerApp:
    """
    Create application configured for development

    In-memory remote store and a JSON file for the offline queue.
    """
    dev_config = {
        'DEBUG': True,
        'REMOTE_STORE': 'memory',
        'LOCAL_STORE': 'json',
        'LOG_LEVEL': 'DEBUG',
    }
    config = load_config(dev_config)
    setup_logging(config['LOG_LEVEL'], config['LOG_FILE'])
    return create_app(dev_config)


def create_production_app() -> EventScannerApp:
    """
    Create application configured for production

    Google Sheets remote store and Redis for the offline queue; secrets
    come from the environment.
    """
    prod_config = {
        'DEBUG': False,
        'REMOTE_STORE': 'sheets',
        'LOCAL_STORE': 'redis',
    }
    config = load_config(prod_config)
    setup_logging(config['LOG_LEVEL'], config['LOG_FILE'])
    return create_app(prod_config)


if __name__ == "__main__":
    app = create_development_app()
    app.run(debug=True)
