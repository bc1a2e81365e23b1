"""Tests for the assembled application: lifespan, health and redirects."""

from pathlib import Path

import httpx
import pytest

from models import RedirectStatus, SourceType, UrlRedirect


@pytest.fixture
def store_url(tmp_path: Path, monkeypatch) -> str:
    url = f"sqlite+aiosqlite:///{tmp_path / 'store.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    return url


@pytest.mark.integration
class TestApplication:
    async def test_serves_redirects_from_store(self, store_url: str):
        from main import app

        async with app.router.lifespan_context(app):
            assert app.state.init_done is True
            async with app.state.session_maker() as session:
                session.add(
                    UrlRedirect(
                        id="1",
                        old_url="/old-product/",
                        new_url="/products/SA-12K-2P/",
                        source_type=SourceType.PRODUCT,
                        status=RedirectStatus.MAPPED,
                    )
                )
                await session.commit()

            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(
                transport=transport, base_url="http://testserver"
            ) as client:
                redirect = await client.get("/old-product?ref=mail")
                missing = await client.get("/never-existed/")
                ready = await client.get("/ready")
                health = await client.get("/health")

        assert redirect.status_code == 301
        assert redirect.headers["location"] == "/SA-12K-2P/?ref=mail"
        assert missing.status_code == 404
        assert ready.status_code == 200
        assert health.json() == {"status": "healthy", "service": "storefront-redirects"}
