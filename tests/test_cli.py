"""Tests for the operator CLI."""

import httpx
import pytest

from syncbridge import cli


@pytest.fixture
def responses(monkeypatch):
    """Canned operator API answers keyed by (method, path)."""
    canned = {}
    seen = []

    async def fake_request(args, method, path, **kwargs):
        seen.append((method, path, kwargs.get("params")))
        return canned[(method, path)]

    monkeypatch.setattr(cli, "_request", fake_request)
    canned["seen"] = seen
    return canned


class TestParser:
    def test_defaults(self):
        args = cli.build_parser().parse_args(["status"])
        assert args.base_url == "http://localhost:8060"
        assert args.command == "status"

    def test_resync_entity_choices(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["resync", "asset"])

    def test_no_command(self, capsys):
        assert cli.main([]) == 1


class TestCommands:
    def test_status(self, responses, capsys):
        responses[("GET", "/health")] = httpx.Response(200, json={
            "status": "degraded",
            "consumers": {"device": {"running": False, "processed": 3, "failure": "database is locked"}},
            "dead_letters": {"pending": 2},
            "telemetry": {},
        })

        assert cli.main(["status"]) == 0
        out = capsys.readouterr().out
        assert "degraded" in out
        assert "database is locked" in out

    def test_dead_letter_listing_with_filter(self, responses, capsys):
        responses[("GET", "/dead-letters")] = httpx.Response(200, json={"count": 0, "dead_letters": []})

        assert cli.main(["dead-letters", "--entity-type", "tenant", "--limit", "5"]) == 0
        assert responses["seen"][0][2] == {"entity_type": "tenant", "limit": 5}

    def test_failed_replay_exit_code(self, responses, capsys):
        responses[("POST", "/dead-letters/evt-1/replay")] = httpx.Response(200, json={
            "event_id": "evt-1", "state": "DeadLettered", "attempts": 1, "error": "HTTP 422", "resolved": False,
        })

        assert cli.main(["replay", "evt-1"]) == 2
        assert "HTTP 422" in capsys.readouterr().out

    def test_error_response(self, responses, capsys):
        responses[("DELETE", "/dead-letters/evt-9")] = httpx.Response(404, json={"error": "Not found"})

        assert cli.main(["purge", "evt-9"]) == 1
        assert "404" in capsys.readouterr().err

    def test_resync_allow_empty(self, responses, capsys):
        responses[("POST", "/resync/device")] = httpx.Response(200, json={
            "run_id": "r1", "entity_type": "device", "authority": 0, "legacy": 3, "deleted": 3,
        })

        assert cli.main(["resync", "device", "--allow-empty"]) == 0
        assert responses["seen"][0] == ("POST", "/resync/device", {"allow_empty": "true"})
        assert "deleted:" in capsys.readouterr().out

    def test_resync_refused(self, responses, capsys):
        responses[("POST", "/resync/device")] = httpx.Response(409, json={"error": "Resync refused"})

        assert cli.main(["resync", "device"]) == 1
        assert responses["seen"][0][2] is None
        assert "409" in capsys.readouterr().err

    def test_classify(self, responses, capsys):
        responses[("GET", "/routing/classify")] = httpx.Response(200, json={
            "method": "GET", "path": "/api/device/abc", "classification": "read",
            "operation": "getDevice", "entity": "device", "path_params": {"deviceId": "abc"}, "query_params": {},
        })

        assert cli.main(["classify", "GET", "/api/device/abc"]) == 0
        assert "getDevice (device)" in capsys.readouterr().out
