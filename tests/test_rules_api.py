"""Tests for the rule management and shop settings APIs (session-token authenticated)."""

import asyncio
import csv
import io
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from storeguard.api.rules import router as rules_router
from storeguard.api.shop_settings import router as settings_router
from storeguard.api.storefront import get_access_decider
from storeguard.api.storefront import router as storefront_router
from storeguard.core.decision import COUNTRY_BLOCK_MESSAGE, IP_BLOCK_MESSAGE, AccessDecider
from storeguard.models.database import get_db, seed_global_bot_rules

SHOP = "test-store.myshopify.com"
OTHER_SHOP = "other-store.myshopify.com"
CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class _ApiTest:
    @pytest.fixture(autouse=True)
    def _setup(self, db_override, session_token, sync_session_maker):
        self.app = FastAPI()
        self.app.include_router(rules_router)
        self.app.include_router(settings_router)
        self.app.include_router(storefront_router)
        self.app.dependency_overrides[get_db] = db_override
        self.app.dependency_overrides[get_access_decider] = lambda: AccessDecider()
        self.client = TestClient(self.app)
        self.maker = sync_session_maker
        self.make_token = session_token
        self.headers = {"Authorization": f"Bearer {session_token()}"}
        self.other_headers = {"Authorization": f"Bearer {session_token(shop=OTHER_SHOP)}"}


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class TestSessionTokenAuth(_ApiTest):
    def test_missing_token(self):
        resp = self.client.get("/v1/rules/ips")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_expired_token(self):
        token = self.make_token(exp=int(time.time()) - 120)
        resp = self.client.get("/v1/rules/ips", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Session token expired."

    def test_wrong_secret(self):
        token = self.make_token(secret="not-the-secret")
        resp = self.client.get("/v1/rules/ips", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_wrong_audience(self):
        token = self.make_token(aud="some-other-app")
        resp = self.client.get("/v1/rules/ips", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_missing_dest(self):
        token = self.make_token(dest=None)
        resp = self.client.get("/v1/rules/ips", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_valid_token(self):
        assert self.client.get("/v1/rules/ips", headers=self.headers).status_code == 200


# ---------------------------------------------------------------------------
# IP rules
# ---------------------------------------------------------------------------

class TestIpRules(_ApiTest):
    def test_crud_round_trip(self):
        resp = self.client.post("/v1/rules/ips", headers=self.headers, json={
            "ip_address": "::ffff:203.0.113.5",
            "note": "chargeback fraud",
        })
        assert resp.status_code == 201
        rule = resp.json()
        assert rule["ip_address"] == "203.0.113.5"
        assert rule["shop_domain"] == SHOP
        assert rule["list_type"] == "blacklist"
        assert rule["is_enabled"] is True

        listed = self.client.get("/v1/rules/ips", headers=self.headers).json()
        assert [r["id"] for r in listed] == [rule["id"]]

        resp = self.client.patch(f"/v1/rules/ips/{rule['id']}", headers=self.headers,
                                 json={"is_enabled": False, "note": "reviewed"})
        assert resp.status_code == 200
        assert resp.json()["is_enabled"] is False
        assert resp.json()["note"] == "reviewed"
        assert resp.json()["list_type"] == "blacklist"

        resp = self.client.delete(f"/v1/rules/ips/{rule['id']}", headers=self.headers)
        assert resp.status_code == 204
        assert self.client.get("/v1/rules/ips", headers=self.headers).json() == []

    def test_shop_scoping(self):
        rule = self.client.post("/v1/rules/ips", headers=self.headers,
                                json={"ip_address": "8.8.4.4"}).json()

        assert self.client.get("/v1/rules/ips", headers=self.other_headers).json() == []
        resp = self.client.patch(f"/v1/rules/ips/{rule['id']}", headers=self.other_headers,
                                 json={"note": "mine now"})
        assert resp.status_code == 404
        resp = self.client.delete(f"/v1/rules/ips/{rule['id']}", headers=self.other_headers)
        assert resp.status_code == 404

    def test_same_ip_allowed_for_different_shops(self):
        body = {"ip_address": "8.8.4.4"}
        assert self.client.post("/v1/rules/ips", headers=self.headers, json=body).status_code == 201
        assert self.client.post("/v1/rules/ips", headers=self.other_headers, json=body).status_code == 201

    def test_duplicate_rejected(self):
        self.client.post("/v1/rules/ips", headers=self.headers, json={"ip_address": "8.8.4.4"})
        resp = self.client.post("/v1/rules/ips", headers=self.headers,
                                json={"ip_address": "8.8.4.4", "list_type": "whitelist"})
        assert resp.status_code == 409

    @pytest.mark.parametrize("body", [
        {"ip_address": "999.1.1.1"},
        {"ip_address": ""},
        {"ip_address": "8.8.4.4", "list_type": "greylist"},
        {"ip_address": "8.8.4.4", "redirect_url": "javascript:alert(1)"},
    ])
    def test_validation(self, body):
        resp = self.client.post("/v1/rules/ips", headers=self.headers, json=body)
        assert resp.status_code == 422

    def test_filter_by_list_type(self):
        self.client.post("/v1/rules/ips", headers=self.headers, json={"ip_address": "1.1.1.1"})
        self.client.post("/v1/rules/ips", headers=self.headers,
                         json={"ip_address": "1.0.0.1", "list_type": "whitelist"})

        resp = self.client.get("/v1/rules/ips", params={"list_type": "whitelist"}, headers=self.headers)
        assert [r["ip_address"] for r in resp.json()] == ["1.0.0.1"]


# ---------------------------------------------------------------------------
# Country rules
# ---------------------------------------------------------------------------

class TestCountryRules(_ApiTest):
    def test_code_normalized(self):
        resp = self.client.post("/v1/rules/countries", headers=self.headers,
                                json={"country_code": " cn "})
        assert resp.status_code == 201
        assert resp.json()["country_code"] == "CN"

    @pytest.mark.parametrize("code", ["USA", "U", "1A", ""])
    def test_invalid_code(self, code):
        resp = self.client.post("/v1/rules/countries", headers=self.headers,
                                json={"country_code": code})
        assert resp.status_code == 422

    def test_update_list_type(self):
        rule = self.client.post("/v1/rules/countries", headers=self.headers,
                                json={"country_code": "US"}).json()
        resp = self.client.patch(f"/v1/rules/countries/{rule['id']}", headers=self.headers,
                                 json={"list_type": "whitelist",
                                       "redirect_url": "https://example.com/intl"})
        assert resp.json()["list_type"] == "whitelist"
        assert resp.json()["redirect_url"] == "https://example.com/intl"

    def test_null_list_type_ignored(self):
        rule = self.client.post("/v1/rules/countries", headers=self.headers,
                                json={"country_code": "US"}).json()
        resp = self.client.patch(f"/v1/rules/countries/{rule['id']}", headers=self.headers,
                                 json={"list_type": None})
        assert resp.status_code == 200
        assert resp.json()["list_type"] == "blacklist"


# ---------------------------------------------------------------------------
# Bot rules
# ---------------------------------------------------------------------------

class TestBotRules(_ApiTest):
    def _seed_global(self):
        async def _run():
            async with self.maker() as session:
                await seed_global_bot_rules(session)
        asyncio.run(_run())

    def test_create_normalizes_pattern(self):
        resp = self.client.post("/v1/rules/bots", headers=self.headers, json={
            "user_agent_pattern": "  AhrefsBot ", "bot_name": "aHrefs Bot", "list_type": "blacklist",
        })
        assert resp.status_code == 201
        assert resp.json()["user_agent_pattern"] == "ahrefsbot"
        assert resp.json()["is_global"] is False

    def test_default_list_type_is_whitelist(self):
        resp = self.client.post("/v1/rules/bots", headers=self.headers,
                                json={"user_agent_pattern": "mycrawler"})
        assert resp.json()["list_type"] == "whitelist"

    def test_list_includes_global_read_only(self):
        self._seed_global()
        self.client.post("/v1/rules/bots", headers=self.headers,
                         json={"user_agent_pattern": "mycrawler"})

        rules = self.client.get("/v1/rules/bots", headers=self.headers).json()
        own = [r for r in rules if not r["is_global"]]
        shared = [r for r in rules if r["is_global"]]
        assert [r["user_agent_pattern"] for r in own] == ["mycrawler"]
        assert "googlebot" in {r["user_agent_pattern"] for r in shared}

        global_id = shared[0]["id"]
        resp = self.client.patch(f"/v1/rules/bots/{global_id}", headers=self.headers,
                                 json={"list_type": "blacklist"})
        assert resp.status_code == 404
        assert self.client.delete(f"/v1/rules/bots/{global_id}", headers=self.headers).status_code == 404

    def test_list_without_global(self):
        self._seed_global()
        rules = self.client.get("/v1/rules/bots", params={"include_global": "false"},
                                headers=self.headers).json()
        assert rules == []

    def test_empty_pattern_rejected(self):
        resp = self.client.post("/v1/rules/bots", headers=self.headers,
                                json={"user_agent_pattern": "   "})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class TestShopSettings(_ApiTest):
    def test_content_protection_defaults(self):
        resp = self.client.get("/v1/settings/content-protection", headers=self.headers)
        assert resp.status_code == 200
        assert resp.json()["enabled"] is False
        assert resp.json()["disable_right_click"] is False

    def test_content_protection_update(self):
        resp = self.client.put("/v1/settings/content-protection", headers=self.headers,
                               json={"disable_right_click": True, "disable_copy_paste": True})
        data = resp.json()
        assert data["enabled"] is True
        assert data["disable_right_click"] is True
        assert data["disable_text_selection"] is False
        assert data["custom_protection_message"] == "Content is protected"

        again = self.client.get("/v1/settings/content-protection", headers=self.headers).json()
        assert again == data

    def test_block_settings(self):
        resp = self.client.put("/v1/settings/block/country", headers=self.headers, json={
            "redirect_url": "https://example.com/intl", "custom_message": "Not shipping there yet",
        })
        assert resp.status_code == 200

        data = self.client.get("/v1/settings/block/country", headers=self.headers).json()
        assert data == {
            "category": "country",
            "redirect_url": "https://example.com/intl",
            "custom_message": "Not shipping there yet",
        }
        other = self.client.get("/v1/settings/block/country", headers=self.other_headers).json()
        assert other["redirect_url"] is None

    def test_unknown_block_category(self):
        resp = self.client.get("/v1/settings/block/planet", headers=self.headers)
        assert resp.status_code == 422

    def test_block_settings_redirect_validated(self):
        resp = self.client.put("/v1/settings/block/ip", headers=self.headers,
                               json={"redirect_url": "ftp://example.com"})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Rules flow into the storefront check
# ---------------------------------------------------------------------------

class TestRulesEnforced(_ApiTest):
    def _check(self, ip="8.8.8.8", **params):
        return self.client.get(
            "/apps/proxy/check_access",
            params={"shop": SHOP, "session_id": "sess-1", **params},
            headers={"User-Agent": CHROME_UA, "X-Forwarded-For": ip},
        ).json()

    def test_ip_rule_blocks(self):
        assert self._check()["blocked"] is False

        self.client.post("/v1/rules/ips", headers=self.headers,
                         json={"ip_address": "8.8.8.8", "note": "scalper"})
        self.client.put("/v1/settings/block/ip", headers=self.headers,
                        json={"redirect_url": "https://example.com/blocked"})

        data = self._check()
        assert data["blocked"] is True
        assert data["reason"] == "IP address blocked: scalper"
        assert data["message"] == IP_BLOCK_MESSAGE
        assert data["redirect_info"]["redirect_url"] == "https://example.com/blocked"

    def test_country_whitelist_mode(self):
        self.client.post("/v1/rules/countries", headers=self.headers,
                         json={"country_code": "US", "list_type": "whitelist"})

        assert self._check(country="US")["blocked"] is False
        data = self._check(country="DE")
        assert data["blocked"] is True
        assert data["reason"] == "Country not in whitelist: DE"
        assert data["message"] == COUNTRY_BLOCK_MESSAGE

    def test_disabled_rule_not_enforced(self):
        rule = self.client.post("/v1/rules/ips", headers=self.headers,
                                json={"ip_address": "8.8.8.8"}).json()
        self.client.patch(f"/v1/rules/ips/{rule['id']}", headers=self.headers,
                          json={"is_enabled": False})
        assert self._check()["blocked"] is False

    def test_content_protection_passed_through(self):
        self.client.put("/v1/settings/content-protection", headers=self.headers,
                        json={"disable_image_drag": True})
        data = self._check()
        assert data["content_protection"]["enabled"] is True
        assert data["content_protection"]["settings"]["disable_image_drag"] is True

    def test_country_guessed_from_timezone(self):
        self.client.post("/v1/rules/countries", headers=self.headers,
                         json={"country_code": "US", "list_type": "whitelist"})

        data = self._check(timezone="Europe/Berlin")

        assert data["blocked"] is True
        assert data["reason"] == "Country not in whitelist: DE"

    def test_bulk_imported_ips_enforced(self):
        self.client.post("/v1/rules/ips/bulk-import", headers=self.headers,
                         json={"ips": ["8.8.8.8", "8.8.4.4"], "note": "botnet"})
        data = self._check()
        assert data["blocked"] is True
        assert data["reason"] == "IP address blocked: botnet"


# ---------------------------------------------------------------------------
# Bulk import, export, IP check
# ---------------------------------------------------------------------------

class TestBulkImport(_ApiTest):
    def test_ips(self):
        self.client.post("/v1/rules/ips", headers=self.headers, json={"ip_address": "1.1.1.1"})

        resp = self.client.post("/v1/rules/ips/bulk-import", headers=self.headers, json={
            "ips": ["8.8.8.8", " 8.8.4.4 ", "1.1.1.1", "not-an-ip", "::ffff:8.8.8.8"],
            "list_type": "whitelist",
            "note": "office",
        })

        assert resp.status_code == 200
        data = resp.json()
        assert data["added"] == ["8.8.8.8", "8.8.4.4"]
        assert data["skipped"] == ["1.1.1.1", "8.8.8.8"]
        assert data["errors"] == [{"value": "not-an-ip", "error": "Invalid IP address"}]

        rules = self.client.get("/v1/rules/ips", params={"list_type": "whitelist"},
                                headers=self.headers).json()
        assert {r["ip_address"] for r in rules} == {"8.8.8.8", "8.8.4.4"}
        assert all(r["note"] == "office" for r in rules)

    def test_countries(self):
        resp = self.client.post("/v1/rules/countries/bulk-import", headers=self.headers, json={
            "countries": ["cn", "RU", "ru", "USA"],
            "redirect_url": "https://example.com/intl",
        })

        data = resp.json()
        assert data["added"] == ["CN", "RU"]
        assert data["skipped"] == ["RU"]
        assert data["errors"] == [{"value": "USA", "error": "Invalid country code"}]

        rules = self.client.get("/v1/rules/countries", headers=self.headers).json()
        assert [r["country_code"] for r in rules] == ["CN", "RU"]
        assert all(r["list_type"] == "blacklist" for r in rules)
        assert all(r["redirect_url"] == "https://example.com/intl" for r in rules)

    def test_scoped_to_shop(self):
        self.client.post("/v1/rules/countries", headers=self.other_headers, json={"country_code": "CN"})
        data = self.client.post("/v1/rules/countries/bulk-import", headers=self.headers,
                                json={"countries": ["CN"]}).json()
        assert data["added"] == ["CN"]

    @pytest.mark.parametrize("body", [
        {"ips": []},
        {"ips": "8.8.8.8"},
        {"ips": ["8.8.8.8"], "list_type": "greylist"},
        {"ips": ["8.8.8.8"], "redirect_url": "ftp://example.com"},
        {},
    ])
    def test_invalid_request(self, body):
        resp = self.client.post("/v1/rules/ips/bulk-import", headers=self.headers, json=body)
        assert resp.status_code == 422

    def test_requires_session(self):
        resp = self.client.post("/v1/rules/ips/bulk-import", json={"ips": ["8.8.8.8"]})
        assert resp.status_code == 401


class TestExport(_ApiTest):
    def _rows(self, resp) -> list[dict]:
        return list(csv.DictReader(io.StringIO(resp.text)))

    def test_ip_rules_csv(self):
        self.client.post("/v1/rules/ips", headers=self.headers,
                         json={"ip_address": "9.9.9.9", "note": "fraud, repeat"})
        self.client.post("/v1/rules/ips", headers=self.headers,
                         json={"ip_address": "1.1.1.1", "list_type": "whitelist"})
        self.client.post("/v1/rules/ips", headers=self.other_headers, json={"ip_address": "7.7.7.7"})

        resp = self.client.get("/v1/rules/ips/export", headers=self.headers)

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert resp.headers["content-disposition"] == f'attachment; filename="ip-rules-{SHOP}.csv"'
        rows = self._rows(resp)
        # whitelist first
        assert [r["IP Address"] for r in rows] == ["1.1.1.1", "9.9.9.9"]
        assert rows[1]["Note"] == "fraud, repeat"
        assert rows[1]["Rule Type"] == "blacklist"
        assert rows[0]["Redirect URL"] == ""

    def test_country_rules_csv(self):
        self.client.post("/v1/rules/countries", headers=self.headers,
                         json={"country_code": "CN", "redirect_url": "https://example.com/cn"})

        resp = self.client.get("/v1/rules/countries/export", headers=self.headers)

        assert resp.headers["content-disposition"] == f'attachment; filename="country-rules-{SHOP}.csv"'
        rows = self._rows(resp)
        assert len(rows) == 1
        assert rows[0]["Country Code"] == "CN"
        assert rows[0]["Redirect URL"] == "https://example.com/cn"
        assert rows[0]["Enabled"] == "True"

    def test_empty_export_has_header(self):
        resp = self.client.get("/v1/rules/countries/export", headers=self.headers)
        assert resp.text.splitlines() == ["Country Code,Rule Type,Redirect URL,Enabled,Created At"]

    def test_requires_session(self):
        assert self.client.get("/v1/rules/ips/export").status_code == 401


class TestIpCheck(_ApiTest):
    def test_unlisted_ip_allowed(self):
        data = self.client.get("/v1/rules/ips/check/8.8.8.8", headers=self.headers).json()
        assert data == {"ip": "8.8.8.8", "blocked": False, "reason": None,
                        "list_type": None, "redirect_url": None}

    def test_blacklisted(self):
        self.client.post("/v1/rules/ips", headers=self.headers, json={
            "ip_address": "8.8.8.8", "note": "scalper", "redirect_url": "https://example.com/no",
        })
        data = self.client.get("/v1/rules/ips/check/8.8.8.8", headers=self.headers).json()
        assert data["blocked"] is True
        assert data["reason"] == "IP address blocked: scalper"
        assert data["list_type"] == "blacklist"
        assert data["redirect_url"] == "https://example.com/no"

    def test_whitelist_mode(self):
        self.client.post("/v1/rules/ips", headers=self.headers,
                         json={"ip_address": "1.1.1.1", "list_type": "whitelist"})

        listed = self.client.get("/v1/rules/ips/check/1.1.1.1", headers=self.headers).json()
        assert listed["blocked"] is False
        assert listed["list_type"] == "whitelist"

        unlisted = self.client.get("/v1/rules/ips/check/8.8.8.8", headers=self.headers).json()
        assert unlisted["blocked"] is True
        assert unlisted["reason"] == "IP not in whitelist"

    def test_address_normalized(self):
        self.client.post("/v1/rules/ips", headers=self.headers, json={"ip_address": "8.8.8.8"})
        data = self.client.get("/v1/rules/ips/check/::ffff:8.8.8.8", headers=self.headers).json()
        assert data["ip"] == "8.8.8.8"
        assert data["blocked"] is True

    def test_other_shop_rules_ignored(self):
        self.client.post("/v1/rules/ips", headers=self.other_headers, json={"ip_address": "8.8.8.8"})
        data = self.client.get("/v1/rules/ips/check/8.8.8.8", headers=self.headers).json()
        assert data["blocked"] is False

    def test_invalid_ip(self):
        resp = self.client.get("/v1/rules/ips/check/not-an-ip", headers=self.headers)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid IP address"
