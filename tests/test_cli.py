import httpx
from click.testing import CliRunner

from devicemfa import __version__, cli
from devicemfa.cli import main
from devicemfa.client.authenticators import check_passcode


def test_version():
    result = CliRunner().invoke(main, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_hash_passcode_prints_verifiable_hash():
    result = CliRunner().invoke(main, ["client", "hash-passcode"], input="4821\n4821\n")

    assert result.exit_code == 0
    encoded = result.output.strip().splitlines()[-1]
    assert check_passcode("4821", encoded)
    assert not check_passcode("0000", encoded)


def test_db_init_creates_schema(tmp_path):
    path = tmp_path / "cli.db"

    result = CliRunner().invoke(main, ["db", "init", "--database-url", f"sqlite+aiosqlite:///{path}"])

    assert result.exit_code == 0, result.output
    assert path.exists()


def test_out_of_band_enroll_requires_address(tmp_path, monkeypatch):
    monkeypatch.setenv("MFA_CLIENT_STATE_PATH", str(tmp_path / "state.json"))
    monkeypatch.setenv("MFA_CLIENT_KEY_DIR", str(tmp_path / "keys"))

    result = CliRunner().invoke(main, ["client", "enroll", "alice", "--out-of-band"])

    assert result.exit_code == 2
    assert "--address is required" in result.output


def test_devices_lists_server_records(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/devices/alice"
        return httpx.Response(200, json=[
            {"deviceId": "D1", "enrolled": True, "method": "ASYMMETRIC_KEY", "hasKey": True},
            {"deviceId": "D2", "enrolled": True, "method": "OUT_OF_BAND_CODE", "hasKey": False, "address": "+15551234567"},
        ])

    real_client = cli.MFAApiClient
    monkeypatch.setattr(
        cli,
        "MFAApiClient",
        lambda *args, **kwargs: real_client(*args, transport=httpx.MockTransport(handler), **kwargs),
    )

    result = CliRunner().invoke(main, ["client", "devices", "alice"])

    assert result.exit_code == 0, result.output
    assert "D1  ASYMMETRIC_KEY  key" in result.output
    assert "D2  OUT_OF_BAND_CODE  codes" in result.output


def test_devices_reports_unreachable_server(monkeypatch):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    real_client = cli.MFAApiClient
    monkeypatch.setattr(
        cli,
        "MFAApiClient",
        lambda *args, **kwargs: real_client(*args, transport=httpx.MockTransport(handler), **kwargs),
    )

    result = CliRunner().invoke(main, ["client", "devices", "alice"])

    assert result.exit_code == 1
    assert "Server unreachable" in result.output
