import hmac
import logging

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse, RedirectResponse

from app.errors import CredentialExchangeFailure
from app.schemas.session import AccessTokenRequest

logger = logging.getLogger(__name__)

router = APIRouter()

APP_NAME = "nifty100-live-app"


def _secret_matches(expected: str, provided: str | None) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


@router.get('/api/health')
def health(request: Request):
    controller = request.app.state.session_controller
    return {
        'ok': True,
        'ws_connected': controller.ws_connected,
        'tracked': controller.tracked,
        'quotes': len(controller.price_cache),
        'state': controller.state,
        'app': APP_NAME,
    }


@router.get('/api/quotes')
def get_quotes(request: Request, tickers: str = ''):
    service = request.app.state.quote_query_service
    return service.get_quotes(tickers)


@router.get('/api/session')
def get_session_status(request: Request):
    return request.app.state.session_controller.status().model_dump()


@router.get('/auth/zerodha/login')
def login(request: Request):
    return RedirectResponse(request.app.state.rest_client.login_url())


@router.get('/auth/zerodha/callback', response_class=PlainTextResponse)
@router.get('/auth/provider/callback', response_class=PlainTextResponse)
def auth_callback(request: Request, request_token: str | None = None):
    token = (request_token or '').strip()
    if not token:
        return PlainTextResponse('Missing request_token', status_code=400)

    rest_client = request.app.state.rest_client
    try:
        access_token = rest_client.generate_session(token)
    except CredentialExchangeFailure as exc:
        logger.error('[AUTH][callback_failed] kind=%s error=%s', exc.kind, exc)
        return PlainTextResponse('Callback failed, check server logs for details.', status_code=500)

    try:
        request.app.state.session_controller.set_credential(access_token, source='oauth-callback')
    except Exception:
        logger.exception('[AUTH][callback_failed] kind=SESSION_START')
        return PlainTextResponse('Callback failed, check server logs for details.', status_code=500)
    logger.info('[AUTH][callback_ok] credential rotated')
    return PlainTextResponse('Zerodha token captured. You can close this window.')


@router.post('/admin/access-token')
def inject_access_token(
    request: Request,
    body: AccessTokenRequest | None = None,
    access_token: str | None = None,
    secret: str | None = None,
    x_admin_secret: str | None = Header(default=None, alias='X-Admin-Secret'),
):
    expected = request.app.state.settings.ADMIN_SECRET
    if not _secret_matches(expected, x_admin_secret or secret):
        raise HTTPException(status_code=401, detail='UNAUTHORIZED')

    token = (body.access_token if body is not None else access_token or '').strip()
    if not token:
        raise HTTPException(status_code=400, detail='ACCESS_TOKEN_REQUIRED')

    status = request.app.state.session_controller.set_credential(token, source='admin-api')
    logger.info('[AUTH][admin_inject] state=%s', status.state)
    return status.model_dump()
