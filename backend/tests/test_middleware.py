import pytest
from httpx import ASGITransport, AsyncClient
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from app.middleware import SecurityHeadersMiddleware


def _app(is_production: bool) -> Starlette:
    async def ok(request: Request):
        return PlainTextResponse("OK")

    test_app = Starlette(routes=[
        Route("/", ok),
        Route("/signals/signup", ok, methods=["POST"]),
        Route("/referrals/validate/{code}", ok),
    ])
    test_app.add_middleware(SecurityHeadersMiddleware, is_production=is_production)
    return test_app


@pytest.mark.asyncio
async def test_security_headers_in_production():
    """All security headers including HSTS are set in production."""
    transport = ASGITransport(app=_app(is_production=True))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get("/")

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "max-age=31536000" in response.headers["Strict-Transport-Security"]
    assert "Content-Security-Policy" in response.headers


@pytest.mark.asyncio
async def test_no_hsts_outside_production():
    transport = ASGITransport(app=_app(is_production=False))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get("/")

    assert "Strict-Transport-Security" not in response.headers


@pytest.mark.asyncio
async def test_internal_responses_are_not_cached():
    transport = ASGITransport(app=_app(is_production=False))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        internal = await ac.post("/signals/signup")
        public = await ac.get("/referrals/validate/alice")

    assert internal.headers["Cache-Control"] == "no-store"
    assert "Cache-Control" not in public.headers
