"""AWS Lambda handler for calendar feed registration and sync."""
import hmac
import json
import logging
import time
from typing import Any, Dict, List, Optional

from config import Settings, get_settings
from fetcher.providers import build_providers
from processor.errors import (
    CalendarSyncError,
    ConcurrentSyncError,
    ConfigurationError,
    DuplicateSourceError,
    MappingNotFoundError,
    RateLimitedError,
    SourceInactiveError,
    SourceNotFoundError,
    ValidationError,
)
from processor.models import EVENT_TYPE_EVENT, CalendarSource, MappingRule
from processor.time_utils import to_iso
from security.credential_vault import CredentialVault
from storage.event_store import EventStore
from storage.mapping_store import MappingStore
from storage.source_registry import SourceRegistry
from sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

_RESERVED_LOG_ATTRS = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {
    'message', 'asctime'
}


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including fields passed via extra."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


STATUS_CODES = {
    ValidationError: 400,
    SourceNotFoundError: 404,
    MappingNotFoundError: 404,
    DuplicateSourceError: 409,
    SourceInactiveError: 409,
    ConcurrentSyncError: 409,
    RateLimitedError: 429,
    ConfigurationError: 503,
}


def _response(status_code: int, body: Dict[str, Any], headers: Optional[dict] = None) -> dict:
    response = {'statusCode': status_code, 'body': json.dumps(body)}
    if headers:
        response['headers'] = headers
    return response


def _error_response(error: CalendarSyncError) -> dict:
    status_code = STATUS_CODES.get(type(error), 500)
    body = {'success': False, 'error': error.code, 'message': error.message}
    headers = None
    if isinstance(error, RateLimitedError):
        body['retry_after_seconds'] = error.retry_after_seconds
        headers = {'Retry-After': str(error.retry_after_seconds)}
    return _response(status_code, body, headers)


def _parse_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    """Request fields from an API Gateway body or a direct invocation."""
    body = event.get('body')
    if isinstance(body, str) and body:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            raise ValidationError('Request body must be JSON', code='invalid_request')
        if not isinstance(payload, dict):
            raise ValidationError('Request body must be a JSON object', code='invalid_request')
        return payload
    if isinstance(body, dict):
        return body
    return event


def _resolve_action(event: Dict[str, Any], payload: Dict[str, Any]) -> Optional[str]:
    if event.get('source') == 'aws.events' or payload.get('batch') is True:
        return 'batch'
    return payload.get('action') or event.get('action')


def _require(payload: Dict[str, Any], *fields: str) -> None:
    missing = [name for name in fields if not payload.get(name)]
    if missing:
        raise ValidationError(
            f"{', '.join(missing)} required", code='invalid_request'
        )


def _extract_secret(event: Dict[str, Any], payload: Dict[str, Any]) -> Optional[str]:
    headers = {key.lower(): value for key, value in (event.get('headers') or {}).items()}
    authorization = headers.get('authorization') or ''
    if authorization.startswith('Bearer '):
        return authorization[len('Bearer '):]
    detail = event.get('detail') if isinstance(event.get('detail'), dict) else {}
    return headers.get('x-cron-secret') or payload.get('secret') or detail.get('secret')


def secrets_match(provided: Optional[str], expected: str) -> bool:
    """Constant-time comparison of the scheduler secret."""
    if not provided:
        return False
    return hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8'))


def _build_registry(settings: Settings, vault: Optional[CredentialVault]) -> SourceRegistry:
    return SourceRegistry(
        settings.sources_table_name,
        settings.credentials_table_name,
        vault=vault,
        default_refresh_minutes=settings.default_refresh_minutes
    )


def _build_mapping_store(settings: Settings) -> MappingStore:
    return MappingStore(settings.mappings_table_name)


def _build_orchestrator(settings: Settings, vault: CredentialVault) -> SyncOrchestrator:
    return SyncOrchestrator(
        registry=_build_registry(settings, vault),
        event_store=EventStore(settings.events_table_name),
        vault=vault,
        providers=build_providers(timeout=settings.fetch_timeout_seconds),
        max_workers=settings.max_workers,
        mapping_store=_build_mapping_store(settings)
    )


def handle_register(event, payload, context, settings: Settings) -> dict:
    _require(payload, 'user_id', 'raw_url', 'child_id')
    vault = CredentialVault(settings.encryption_key)
    registry = _build_registry(settings, vault)

    source = registry.register_source(
        user_id=payload['user_id'],
        child_id=payload['child_id'],
        raw_url=payload['raw_url'],
        display_name=payload.get('display_name')
    )
    return _response(201, {
        'success': True,
        'source_id': source.source_id,
        'display_name': source.display_name,
        'masked_url': vault.mask(vault.normalize(payload['raw_url'])),
    })


def handle_sync(event, payload, context, settings: Settings) -> dict:
    _require(payload, 'source_id')
    vault = CredentialVault(settings.encryption_key)
    orchestrator = _build_orchestrator(settings, vault)

    result = orchestrator.sync_manual(payload['source_id'], user_id=payload.get('user_id'))
    body = result.to_dict()

    if not result.success:
        codes = [error.code for error in result.errors]
        status_code = 409 if ConcurrentSyncError.code in codes else 502
        body.update(success=False, error=codes[0], message=result.errors[0].message)
        return _response(status_code, body)

    body['success'] = True
    return _response(200, body)


def _source_summary(source: CalendarSource) -> Dict[str, Any]:
    return {
        'source_id': source.source_id,
        'child_id': source.child_id,
        'provider': source.provider,
        'display_name': source.display_name,
        'active': source.active,
        'created_at': to_iso(source.created_at),
        'last_synced_at': to_iso(source.last_synced_at),
        'last_sync_status': source.last_sync_status,
        'last_sync_error': source.last_sync_error,
    }


def handle_list_sources(event, payload, context, settings: Settings) -> dict:
    _require(payload, 'user_id')
    registry = _build_registry(settings, vault=None)

    sources = registry.list_sources(
        payload['user_id'], include_inactive=payload.get('include_inactive') is True
    )
    if payload.get('child_id'):
        sources = [source for source in sources if source.child_id == payload['child_id']]

    return _response(200, {
        'success': True,
        'sources': [_source_summary(source) for source in sources],
    })


def handle_batch(event, payload, context, settings: Settings) -> dict:
    if not settings.cron_secret:
        logger.error("CRON_SECRET environment variable is not configured")
        raise ConfigurationError('Cron secret not configured')

    if not secrets_match(_extract_secret(event, payload), settings.cron_secret):
        return _response(401, {'success': False, 'error': 'unauthorized'})

    vault = CredentialVault(settings.encryption_key)
    orchestrator = _build_orchestrator(settings, vault)

    time_remaining = None
    if context is not None and hasattr(context, 'get_remaining_time_in_millis'):
        def time_remaining():
            return context.get_remaining_time_in_millis() / 1000.0

    batch = orchestrator.sync_due(
        limit=settings.max_sources_per_run,
        time_remaining=time_remaining,
        margin_seconds=settings.deadline_margin_seconds
    )
    return _response(200, {
        'success': True,
        'synced_count': batch.synced_count,
        'skipped_count': batch.skipped_count,
        'errors': batch.errors,
    })


def handle_replace_credential(event, payload, context, settings: Settings) -> dict:
    _require(payload, 'source_id', 'raw_url')
    vault = CredentialVault(settings.encryption_key)
    registry = _build_registry(settings, vault)

    source, masked_url = registry.replace_credential(
        payload['source_id'], payload['raw_url'], user_id=payload.get('user_id')
    )
    return _response(200, {
        'success': True,
        'source_id': source.source_id,
        'masked_url': masked_url,
    })


def handle_disconnect(event, payload, context, settings: Settings) -> dict:
    _require(payload, 'source_id')
    vault = CredentialVault(settings.encryption_key)
    registry = _build_registry(settings, vault)

    # Ownership check before deactivating
    registry.get_source(payload['source_id'], user_id=payload.get('user_id'))
    source = registry.deactivate_source(payload['source_id'])
    return _response(200, {
        'success': True,
        'source_id': source.source_id,
        'active': source.active,
    })


def _mapping_summary(rule: MappingRule) -> Dict[str, Any]:
    return {
        'mapping_id': rule.mapping_id,
        'child_id': rule.child_id,
        'source_id': rule.source_id,
        'match_type': rule.match_type,
        'match_value': rule.match_value,
        'resulting_event_type': rule.resulting_event_type,
        'home_id': rule.home_id,
        'auto_confirm': rule.auto_confirm,
        'priority': rule.priority,
        'active': rule.active,
        'created_at': to_iso(rule.created_at),
    }


def _child_sources(registry: SourceRegistry, user_id: str, child_id: str) -> List[CalendarSource]:
    sources = registry.list_sources(user_id, include_inactive=True)
    return [source for source in sources if source.child_id == child_id]


def handle_create_mapping(event, payload, context, settings: Settings) -> dict:
    _require(payload, 'user_id', 'child_id', 'match_type', 'match_value')
    vault = CredentialVault(settings.encryption_key)
    orchestrator = _build_orchestrator(settings, vault)
    child_id = payload['child_id']

    if payload.get('source_id'):
        # Ownership check; a scoped rule must target one of the child's sources
        source = orchestrator.registry.get_source(payload['source_id'], user_id=payload['user_id'])
        if source.child_id != child_id:
            raise SourceNotFoundError()
        sources = [source]
    else:
        sources = _child_sources(orchestrator.registry, payload['user_id'], child_id)

    rule = orchestrator.mapping_store.create_mapping(
        child_id=child_id,
        match_type=payload['match_type'],
        match_value=payload['match_value'],
        resulting_event_type=payload.get('resulting_event_type') or EVENT_TYPE_EVENT,
        home_id=payload.get('home_id'),
        auto_confirm=payload.get('auto_confirm') is True,
        source_id=payload.get('source_id'),
        priority=payload.get('priority', 0),
        created_by=payload['user_id']
    )
    events_updated = orchestrator.reapply_mappings(child_id, sources)

    return _response(201, {
        'success': True,
        'mapping': _mapping_summary(rule),
        'events_updated': events_updated,
    })


def handle_list_mappings(event, payload, context, settings: Settings) -> dict:
    _require(payload, 'child_id')
    mapping_store = _build_mapping_store(settings)

    rules = mapping_store.list_mappings(
        payload['child_id'], include_inactive=payload.get('include_inactive') is True
    )
    return _response(200, {
        'success': True,
        'mappings': [_mapping_summary(rule) for rule in rules],
    })


def handle_delete_mapping(event, payload, context, settings: Settings) -> dict:
    _require(payload, 'user_id', 'child_id', 'mapping_id')
    vault = CredentialVault(settings.encryption_key)
    orchestrator = _build_orchestrator(settings, vault)
    child_id = payload['child_id']

    # Ownership check before deactivating
    existing = orchestrator.mapping_store.get_mapping(child_id, payload['mapping_id'])
    if existing.created_by and existing.created_by != payload['user_id']:
        raise MappingNotFoundError()

    rule = orchestrator.mapping_store.deactivate_mapping(child_id, existing.mapping_id)
    events_updated = orchestrator.reapply_mappings(
        child_id, _child_sources(orchestrator.registry, payload['user_id'], child_id)
    )

    return _response(200, {
        'success': True,
        'mapping_id': rule.mapping_id,
        'active': rule.active,
        'events_updated': events_updated,
    })


ACTION_HANDLERS = {
    'register': handle_register,
    'sync': handle_sync,
    'list_sources': handle_list_sources,
    'batch': handle_batch,
    'replace_credential': handle_replace_credential,
    'disconnect': handle_disconnect,
    'create_mapping': handle_create_mapping,
    'list_mappings': handle_list_mappings,
    'delete_mapping': handle_delete_mapping,
}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler, dispatching on the request's action.

    Args:
        event: API Gateway request, direct invocation payload or
            EventBridge scheduled event
        context: Lambda context object

    Returns:
        Response dict with statusCode and JSON body
    """
    settings = get_settings()
    setup_logging(settings.log_level)

    start_time = time.time()
    action = None

    try:
        payload = _parse_payload(event or {})
        action = _resolve_action(event or {}, payload)
        handler = ACTION_HANDLERS.get(action)
        if handler is None:
            return _response(400, {
                'success': False,
                'error': 'unknown_action',
                'message': f"Unsupported action: {action}",
            })

        logger.info(f"Handling {action} request")
        response = handler(event or {}, payload, context, settings)

        logger.info(
            f"Handled {action} request",
            extra={
                'status_code': response['statusCode'],
                'duration_seconds': round(time.time() - start_time, 2)
            }
        )
        return response

    except CalendarSyncError as e:
        logger.warning(
            f"{action} request rejected: {e.code}",
            extra={'error_code': e.code, 'duration_seconds': round(time.time() - start_time, 2)}
        )
        return _error_response(e)

    except Exception as e:
        duration = time.time() - start_time

        logger.error(
            f"{action} request failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )

        return _response(500, {
            'success': False,
            'error': 'internal_error',
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })
