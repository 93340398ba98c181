# vps_panel/app.py
from wsgiref.simple_server import make_server
from datetime import datetime, timezone
from urllib.parse import parse_qs
import json
import logging
import re
from typing import Optional

from vps_panel.config import Settings, load_settings
from vps_panel.database.database import SessionLocal
from vps_panel.repositories.sqlalchemy.sqlalchemy_audit_repository import SqlalchemyAuditRepository
from vps_panel.repositories.sqlalchemy.sqlalchemy_instance_repository import SqlalchemyInstanceRepository
from vps_panel.repositories.sqlalchemy.sqlalchemy_ledger_repository import SqlalchemyCapacityLedgerRepository
from vps_panel.repositories.sqlalchemy.sqlalchemy_snapshot_repository import SqlalchemySnapshotRepository
from vps_panel.repositories.sqlalchemy.sqlalchemy_user_repository import SqlalchemyUserRepository
from vps_panel.services.audit_service import AuditFilter, AuditService
from vps_panel.services.compute_service import ComputeService
from vps_panel.services.dashboard_service import DashboardService
from vps_panel.services.identity_service import IdentityService
from vps_panel.services.ledger_service import CapacityLedgerService
from vps_panel.services.snapshot_service import SnapshotService
from vps_panel.services.exceptions import InvalidRequestError, ServiceError, TokenInvalidError

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "Unauthenticated": "401 Unauthorized",
    "Forbidden": "403 Forbidden",
    "NotFound": "404 Not Found",
    "InvalidRange": "400 Bad Request",
    "InvalidRequest": "400 Bad Request",
    "DuplicateAddress": "409 Conflict",
    "DuplicateIdentity": "409 Conflict",
    "InvalidStateTransition": "409 Conflict",
    "NotConfigured": "409 Conflict",
    "Conflict": "409 Conflict",
}

# --------------------------------------------------------------------------
## 요청 처리 유틸리티 함수
# --------------------------------------------------------------------------

def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        data = json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError):
        raise InvalidRequestError("Invalid or missing JSON body.")
    if not isinstance(data, dict):
        raise InvalidRequestError("JSON body must be an object.")
    return data

def pick(data, *fields):
    """요청 본문에서 허용된 필드만 골라냅니다."""
    return {field: data.get(field) for field in fields}

def get_query_params(environ):
    return {key: values[-1] for key, values in parse_qs(environ.get("QUERY_STRING", "")).items()}

def int_param(params, name, default=None):
    raw = params.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidRequestError(f"Query parameter '{name}' must be an integer.")

def datetime_param(params, name):
    raw = params.get(name)
    if not raw:
        return None
    # fromisoformat은 3.11 이전에 'Z' 접미사를 받지 않는다
    if raw.endswith(('Z', 'z')):
        raw = raw[:-1] + '+00:00'
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        raise InvalidRequestError(f"Query parameter '{name}' must be an ISO 8601 timestamp.")
    # 저장된 시각은 모두 naive UTC이다
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

def get_auth_token(environ):
    header = environ.get('HTTP_AUTHORIZATION', '')
    if header.startswith('Bearer '):
        return header[len('Bearer '):].strip()
    return environ.get('HTTP_X_AUTH_TOKEN')

def authorize(environ):
    auth_token = get_auth_token(environ)
    if not auth_token:
        raise TokenInvalidError("Access token required.")
    return environ['services']['identity'].validate_token(auth_token)

def audit_filter_from(params):
    return AuditFilter(
        action=params.get('action') or None,
        instance_id=int_param(params, 'instance_id'),
        principal_id=int_param(params, 'principal_id'),
        start=datetime_param(params, 'start'),
        end=datetime_param(params, 'end'),
    )

def page_args(params, default_limit=10):
    return {'page': int_param(params, 'page', 1), 'limit': int_param(params, 'limit', default_limit)}

def error_body(kind, message):
    return json.dumps({"error": {"kind": kind, "message": message}})

def handle_exception(e):
    if isinstance(e, ServiceError):
        status = STATUS_BY_KIND.get(e.kind)
        if status:
            return status, error_body(e.kind, e.message)
    logger.exception("Unhandled error while processing request")
    return "500 Internal Server Error", error_body("InternalError", "Internal server error.")

def build_services(db_session, settings):
    """요청 하나에서 사용할 리포지토리와 서비스 객체를 생성합니다."""
    user_repo = SqlalchemyUserRepository(db_session)
    instance_repo = SqlalchemyInstanceRepository(db_session)
    snapshot_repo = SqlalchemySnapshotRepository(db_session)
    ledger_repo = SqlalchemyCapacityLedgerRepository(db_session)
    audit_repo = SqlalchemyAuditRepository(db_session)

    audit_service = AuditService(audit_repo, instance_repo, user_repo)
    ledger_service = CapacityLedgerService(ledger_repo, instance_repo, audit_service)
    return {
        'identity': IdentityService(user_repo, instance_repo, audit_service, settings.token_ttl_minutes),
        'compute': ComputeService(instance_repo, snapshot_repo, audit_service, ledger_service),
        'snapshot': SnapshotService(snapshot_repo, instance_repo, audit_service),
        'audit': audit_service,
        'ledger': ledger_service,
        'dashboard': DashboardService(user_repo, instance_repo, audit_repo, ledger_repo),
    }

# --------------------------------------------------------------------------
## 핸들러 함수
# --------------------------------------------------------------------------

def register_handler(environ, *args):
    data = get_request_data(environ)
    user = environ['services']['identity'].register(**pick(data, 'username', 'email', 'password'))
    return '201 Created', json.dumps({"message": "User registered successfully.", "user": user})

def login_handler(environ, *args):
    data = get_request_data(environ)
    token = environ['services']['identity'].authenticate(**pick(data, 'username', 'password'))
    return '201 Created', json.dumps(token)

def logout_handler(environ, *args):
    authorize(environ)
    environ['services']['identity'].revoke_token(get_auth_token(environ))
    return '204 No Content', ''

def profile_handler(environ, *args):
    principal = authorize(environ)
    return '200 OK', json.dumps(environ['services']['identity'].get_profile(principal))

def list_users_handler(environ, *args):
    principal = authorize(environ)
    params = get_query_params(environ)
    return '200 OK', json.dumps(environ['services']['identity'].list_users(principal, **page_args(params)))

def get_user_handler(environ, user_id):
    principal = authorize(environ)
    return '200 OK', json.dumps(environ['services']['identity'].get_user(principal, int(user_id)))

def update_user_handler(environ, user_id):
    principal = authorize(environ)
    data = get_request_data(environ)
    user = environ['services']['identity'].update_user(principal, int(user_id), **pick(data, 'username', 'email', 'role'))
    return '200 OK', json.dumps(user)

def delete_user_handler(environ, user_id):
    principal = authorize(environ)
    environ['services']['identity'].delete_user(principal, int(user_id))
    return '204 No Content', ''

def change_password_handler(environ, *args):
    principal = authorize(environ)
    data = get_request_data(environ)
    environ['services']['identity'].change_password(principal, **pick(data, 'current_password', 'new_password'))
    return '200 OK', json.dumps({"message": "Password changed successfully."})

def list_instances_handler(environ, *args):
    principal = authorize(environ)
    params = get_query_params(environ)
    result = environ['services']['compute'].list_instances(principal, status=params.get('status') or None,
                                                           **page_args(params))
    return '200 OK', json.dumps(result)

def create_instance_handler(environ, *args):
    principal = authorize(environ)
    data = get_request_data(environ)
    result = environ['services']['compute'].create_instance(
        principal, **pick(data, 'name', 'cpu', 'ram', 'storage', 'address')
    )
    return '201 Created', json.dumps(result)

def get_instance_handler(environ, instance_id):
    principal = authorize(environ)
    return '200 OK', json.dumps(environ['services']['compute'].get_instance(principal, int(instance_id)))

def update_instance_handler(environ, instance_id):
    principal = authorize(environ)
    data = get_request_data(environ)
    result = environ['services']['compute'].update_instance(
        principal, int(instance_id), **pick(data, 'name', 'cpu', 'ram', 'storage')
    )
    return '200 OK', json.dumps(result)

def delete_instance_handler(environ, instance_id):
    principal = authorize(environ)
    result = environ['services']['compute'].delete_instance(principal, int(instance_id))
    return '200 OK', json.dumps(result)

def instance_action_handler(environ, instance_id, operation):
    principal = authorize(environ)
    compute = environ['services']['compute']
    handlers = {
        'start': compute.start_instance,
        'stop': compute.stop_instance,
        'restart': compute.restart_instance,
    }
    return '200 OK', json.dumps(handlers[operation](principal, int(instance_id)))

def create_snapshot_handler(environ, instance_id):
    principal = authorize(environ)
    data = get_request_data(environ)
    snapshot = environ['services']['snapshot'].create_snapshot(principal, int(instance_id), data.get('name'))
    return '201 Created', json.dumps(snapshot)

def list_instance_snapshots_handler(environ, instance_id):
    principal = authorize(environ)
    params = get_query_params(environ)
    result = environ['services']['snapshot'].list_snapshots(principal, int(instance_id), **page_args(params))
    return '200 OK', json.dumps(result)

def list_all_snapshots_handler(environ, *args):
    principal = authorize(environ)
    params = get_query_params(environ)
    result = environ['services']['snapshot'].list_all_snapshots(
        principal, instance_id=int_param(params, 'instance_id'), **page_args(params)
    )
    return '200 OK', json.dumps(result)

def get_snapshot_handler(environ, snapshot_id):
    principal = authorize(environ)
    return '200 OK', json.dumps(environ['services']['snapshot'].get_snapshot(principal, int(snapshot_id)))

def delete_snapshot_handler(environ, snapshot_id):
    principal = authorize(environ)
    environ['services']['snapshot'].delete_snapshot(principal, int(snapshot_id))
    return '204 No Content', ''

def restore_snapshot_handler(environ, snapshot_id):
    principal = authorize(environ)
    result = environ['services']['snapshot'].restore_snapshot(principal, int(snapshot_id))
    return '200 OK', json.dumps(result)

def list_logs_handler(environ, *args):
    principal = authorize(environ)
    params = get_query_params(environ)
    result = environ['services']['audit'].list_entries(principal, audit_filter_from(params),
                                                       **page_args(params, default_limit=20))
    return '200 OK', json.dumps(result)

def log_stats_handler(environ, *args):
    principal = authorize(environ)
    params = get_query_params(environ)
    return '200 OK', json.dumps(environ['services']['audit'].stats(principal, audit_filter_from(params)))

def get_log_handler(environ, entry_id):
    principal = authorize(environ)
    return '200 OK', json.dumps(environ['services']['audit'].get_entry(principal, int(entry_id)))

def instance_logs_handler(environ, instance_id):
    principal = authorize(environ)
    params = get_query_params(environ)
    result = environ['services']['audit'].list_instance_entries(
        principal, int(instance_id), params.get('action'), **page_args(params, default_limit=20)
    )
    return '200 OK', json.dumps(result)

def principal_logs_handler(environ, user_id):
    principal = authorize(environ)
    params = get_query_params(environ)
    result = environ['services']['audit'].list_principal_entries(
        principal, int(user_id), params.get('action'), **page_args(params, default_limit=20)
    )
    return '200 OK', json.dumps(result)

def get_resources_handler(environ, *args):
    principal = authorize(environ)
    return '200 OK', json.dumps(environ['services']['ledger'].get_ledger(principal))

def resource_summary_handler(environ, *args):
    principal = authorize(environ)
    return '200 OK', json.dumps(environ['services']['ledger'].summary(principal))

def resource_stats_handler(environ, *args):
    principal = authorize(environ)
    return '200 OK', json.dumps(environ['services']['ledger'].stats(principal))

def update_resources_handler(environ, *args):
    principal = authorize(environ)
    data = get_request_data(environ)
    return '200 OK', json.dumps(environ['services']['ledger'].apply_bounds(principal, data))

def reconcile_resources_handler(environ, *args):
    principal = authorize(environ)
    return '200 OK', json.dumps(environ['services']['ledger'].reconcile_as(principal))

def dashboard_stats_handler(environ, *args):
    principal = authorize(environ)
    return '200 OK', json.dumps(environ['services']['dashboard'].stats(principal))

ROUTES = [
    ('POST', r'^/v1/auth/register$', register_handler),
    ('POST', r'^/v1/auth/login$', login_handler),
    ('POST', r'^/v1/auth/logout$', logout_handler),
    ('GET', r'^/v1/auth/profile$', profile_handler),
    ('GET', r'^/v1/users$', list_users_handler),
    ('PUT', r'^/v1/users/me/password$', change_password_handler),
    ('GET', r'^/v1/users/([0-9]+)$', get_user_handler),
    ('PUT', r'^/v1/users/([0-9]+)$', update_user_handler),
    ('DELETE', r'^/v1/users/([0-9]+)$', delete_user_handler),
    ('GET', r'^/v1/instances$', list_instances_handler),
    ('POST', r'^/v1/instances$', create_instance_handler),
    ('GET', r'^/v1/instances/([0-9]+)$', get_instance_handler),
    ('PUT', r'^/v1/instances/([0-9]+)$', update_instance_handler),
    ('DELETE', r'^/v1/instances/([0-9]+)$', delete_instance_handler),
    ('POST', r'^/v1/instances/([0-9]+)/(start|stop|restart)$', instance_action_handler),
    ('POST', r'^/v1/instances/([0-9]+)/snapshots$', create_snapshot_handler),
    ('GET', r'^/v1/instances/([0-9]+)/snapshots$', list_instance_snapshots_handler),
    ('GET', r'^/v1/snapshots$', list_all_snapshots_handler),
    ('GET', r'^/v1/snapshots/([0-9]+)$', get_snapshot_handler),
    ('DELETE', r'^/v1/snapshots/([0-9]+)$', delete_snapshot_handler),
    ('POST', r'^/v1/snapshots/([0-9]+)/restore$', restore_snapshot_handler),
    ('GET', r'^/v1/logs$', list_logs_handler),
    ('GET', r'^/v1/logs/stats$', log_stats_handler),
    ('GET', r'^/v1/logs/([0-9]+)$', get_log_handler),
    ('GET', r'^/v1/logs/instances/([0-9]+)$', instance_logs_handler),
    ('GET', r'^/v1/logs/users/([0-9]+)$', principal_logs_handler),
    ('GET', r'^/v1/resources$', get_resources_handler),
    ('PUT', r'^/v1/resources$', update_resources_handler),
    ('GET', r'^/v1/resources/summary$', resource_summary_handler),
    ('GET', r'^/v1/resources/stats$', resource_stats_handler),
    ('POST', r'^/v1/resources/reconcile$', reconcile_resources_handler),
    ('GET', r'^/v1/dashboard/stats$', dashboard_stats_handler),
]

# --------------------------------------------------------------------------
## WSGI 애플리케이션 (의존성 주입 및 라우팅)
# --------------------------------------------------------------------------

def make_app(session_factory=SessionLocal, settings: Optional[Settings] = None):
    """세션 팩토리와 설정을 받아 WSGI 애플리케이션을 만듭니다."""
    settings = settings or load_settings()

    def application(environ, start_response):
        db_session = session_factory()
        try:
            # 1. 의존성 생성 (Repositories -> Services)
            environ['services'] = build_services(db_session, settings)

            # 2. 라우팅 및 핸들러 실행
            path = environ.get("PATH_INFO", "")
            method = environ.get("REQUEST_METHOD", "")

            handler, path_args = None, []
            for route_method, pattern, route_handler in ROUTES:
                if method == route_method and (match := re.match(pattern, path)):
                    handler, path_args = route_handler, match.groups()
                    break

            if handler:
                status, response_body = handler(environ, *path_args)
            else:
                status, response_body = '404 Not Found', error_body("NotFound", "Route not found.")

        except Exception as e:
            db_session.rollback()
            status, response_body = handle_exception(e)
        finally:
            db_session.close()

        start_response(status, [("Content-Type", "application/json")])
        return [response_body.encode("utf-8")]

    return application


application = make_app()

# --------------------------------------------------------------------------
## 서버 실행
# --------------------------------------------------------------------------

if __name__ == "__main__":
    from vps_panel.database.db_init import initialize_db
    from vps_panel.utils.logging_setup import configure_logging

    settings = load_settings()
    configure_logging(settings.log_level)
    initialize_db(settings)
    try:
        with make_server(settings.host, settings.port, make_app(SessionLocal, settings)) as httpd:
            logger.info("Serving VPS control panel on port %d...", settings.port)
            httpd.serve_forever()
    except Exception:
        logger.exception("Error starting server")
        raise
