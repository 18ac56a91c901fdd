"""Tests for api/api/routers/auth.py

Covers:
- GET /auth/check-slug: format rules, reserved names, taken slugs
- POST /auth/session-relay behaves like the GET variant
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest


class TestCheckSlug:
    @pytest.mark.asyncio
    async def test_free_slug_is_available(self, apex_client, world) -> None:
        resp = await apex_client.get("/api/auth/check-slug", params={"slug": "shiny-cars"})
        assert resp.status_code == 200
        assert resp.json() == {"available": True, "reason": None}

    @pytest.mark.asyncio
    async def test_taken_slug(self, apex_client, world) -> None:
        resp = await apex_client.get("/api/auth/check-slug", params={"slug": "Demo"})
        assert resp.json() == {"available": False, "reason": "slug is already taken"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("slug", "reason"),
        [
            ("ab", "slug must be between 3 and 100 characters"),
            ("car_wash", "slug may only contain lowercase letters, digits and hyphens"),
            ("admin", "slug is reserved"),
            ("", "slug must be between 3 and 100 characters"),
        ],
    )
    async def test_rejected_slugs(self, apex_client, slug: str, reason: str) -> None:
        resp = await apex_client.get("/api/auth/check-slug", params={"slug": slug})
        assert resp.status_code == 200
        assert resp.json() == {"available": False, "reason": reason}


class TestSessionRelayPost:
    @pytest.mark.asyncio
    async def test_post_forwards_session(self, apex_client, make_token, test_settings) -> None:
        token = make_token("user-1")

        resp = await apex_client.post(
            "/api/auth/session-relay",
            params={"callbackUrl": "http://demo.carwash.test/dashboard"},
            headers={"Cookie": f"{test_settings.session_cookie_name}={token}"},
        )

        assert resp.status_code == 302
        location = urlsplit(resp.headers["location"])
        assert location.netloc == "demo.carwash.test"
        assert location.path == "/api/auth/session-relay"
        assert parse_qs(location.query)["token"] == [token]
