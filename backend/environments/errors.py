"""
Typed errors raised by the site environment orchestrator.

Every error carries a stable ``code`` (stored in ``Website.status_reason`` when
an operation ends in the error state), a human-readable ``reason`` and the
HTTP status the API answers with.
"""
from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""
    code = 'OrchestratorError'
    http_status = 500

    def __init__(self, reason: str = '', site_id: Optional[str] = None):
        self.reason = reason or self.code
        self.site_id = site_id
        super().__init__(self.reason)

    def to_dict(self) -> dict:
        return {'error': self.reason, 'code': self.code}


class SiteNotFound(OrchestratorError):
    code = 'SiteNotFound'
    http_status = 404


class ValidationError(OrchestratorError):
    code = 'ValidationError'
    http_status = 400

    def __init__(self, reason: str = '', site_id: Optional[str] = None, fields: Optional[dict] = None):
        super().__init__(reason, site_id)
        self.fields = fields or {}

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.fields:
            data['fields'] = self.fields
        return data


class DuplicateDomain(ValidationError):
    code = 'DuplicateDomain'
    http_status = 409


class InvalidTransition(OrchestratorError):
    code = 'InvalidTransition'
    http_status = 409


class OperationInProgress(OrchestratorError):
    code = 'OperationInProgress'
    http_status = 409


class PortConflict(OrchestratorError):
    code = 'PortConflict'
    http_status = 409


class PortsExhausted(OrchestratorError):
    code = 'PortsExhausted'
    http_status = 503


class BackendUnavailable(OrchestratorError):
    code = 'BackendUnavailable'
    http_status = 503


class ProcessSpawnFailure(OrchestratorError):
    code = 'ProcessSpawnFailure'
    http_status = 502


class StartTimeout(OrchestratorError):
    code = 'StartTimeout'
    http_status = 504
    # Set when the timed-out call is still running and a cleanup owns its result
    late_result_pending = False


class HealthCheckFailed(OrchestratorError):
    code = 'HealthCheckFailed'
    http_status = 502


class MigrationFailed(OrchestratorError):
    code = 'MigrationFailed'
    http_status = 502


class OrphanedAfterRestart(OrchestratorError):
    code = 'OrphanedAfterRestart'
    http_status = 409
