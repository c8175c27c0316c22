from starlette.requests import Request

from app.context import get_correlation_id
from app.identity.sessions import session_manager
from app.platform.security.context import AuthContext
from app.platform.security.errors import Unauthenticated


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header[len("Bearer ") :].strip() if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthContext:
    token = _bearer_token(request)
    if not token:
        raise Unauthenticated("Missing bearer token")

    ctx = session_manager.authenticate(token, correlation_id=get_correlation_id())
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = str(ctx.user_id)
    return ctx
