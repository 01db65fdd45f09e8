"""FastAPI router for the login, callback, logout and identity endpoints.

Usage:
    from fastapi import FastAPI
    from clavis import OIDCContext, create_auth_router, lifespan

    context = OIDCContext()
    app = FastAPI(lifespan=lifespan(context))
    app.include_router(create_auth_router(context))
"""

# NOTE: Do NOT use ``from __future__ import annotations`` here.
# The route handlers are closures annotated with the local ``Context``
# alias, which FastAPI can only resolve from runtime annotations.

from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from clavis.context import OIDCContext
from clavis.dependencies import get_oidc_context
from clavis.handlers import RedirectResult, begin_login, handle_callback


def _redirect(result: RedirectResult) -> RedirectResponse:
    response = RedirectResponse(result.location, status_code=result.status_code)
    for cookie in result.cookies:
        cookie.apply(response)
    return response


def create_auth_router(
    context: OIDCContext | None = None,
    prefix: str = "/api/auth",
) -> APIRouter:
    """Build the auth router.

    Args:
        context: Runtime context; defaults to the application's
            ``app.state.oidc_context`` or the process default.
        prefix: Mount prefix. The callback path under it must match the
            configured redirect URI.

    Routes:
        GET  {prefix}/login?returnTo=&screenHint=  -> 302 to the IdP
        GET  {prefix}/callback                     -> 302 to returnTo
        GET|POST {prefix}/logout?returnTo=         -> 302 after clearing cookies
        GET  {prefix}/me                           -> current identity as JSON
    """
    router = APIRouter(prefix=prefix, tags=["auth"])

    def resolve(request: Request) -> OIDCContext:
        return context if context is not None else get_oidc_context(request)

    Context = Annotated[OIDCContext, Depends(resolve)]

    @router.get("/login", name="auth_login")
    async def login(
        request: Request,
        ctx: Context,
        return_to: Annotated[str | None, Query(alias="returnTo")] = None,
        screen_hint: Annotated[
            Literal["sign-up", "sign-in"] | None, Query(alias="screenHint")
        ] = None,
    ) -> RedirectResponse:
        result = await begin_login(
            ctx.session_manager, return_to, screen_hint=screen_hint, headers=request.headers
        )
        return _redirect(result)

    @router.get("/callback", name="auth_callback")
    async def callback(request: Request, ctx: Context) -> RedirectResponse:
        result = await handle_callback(
            ctx.session_manager, str(request.url), request.cookies, headers=request.headers
        )
        return _redirect(result)

    @router.api_route("/logout", methods=["GET", "POST"], name="auth_logout")
    async def logout(
        request: Request,
        ctx: Context,
        return_to: Annotated[str | None, Query(alias="returnTo")] = None,
        end_session: Annotated[bool, Query(alias="endSession")] = False,
    ) -> RedirectResponse:
        result = await ctx.session_manager.sign_out(
            request.cookies, return_to, end_session=end_session, headers=request.headers
        )
        response = RedirectResponse(result.redirect_url, status_code=302)
        for cookie in result.cookies:
            cookie.apply(response)
        return response

    @router.get("/me", name="auth_me")
    async def me(request: Request, ctx: Context) -> JSONResponse:
        auth = ctx.session_manager.get_auth(request.cookies)
        return JSONResponse(auth.to_dict(), headers={"Cache-Control": "no-store"})

    return router
