"""
devicemfa command line interface.

Server administration (``serve``, ``db``) and a terminal client that
enrolls and signs in this machine as a device (``client``).
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import click

from devicemfa import __version__
from devicemfa.client.authenticators import ConsoleAuthenticator, hash_passcode
from devicemfa.client.capability import CapabilityClassifier
from devicemfa.client.errors import ClientError
from devicemfa.client.key_manager import KeyManager
from devicemfa.client.keystore import build_key_store
from devicemfa.client.local_state import LocalEnrollmentState
from devicemfa.client.network import MFAApiClient
from devicemfa.client.orchestrator import AuthenticationOrchestrator, Fallback, FlowResult, FlowState
from devicemfa.client.settings import ClientSettings


@click.group()
@click.version_option(version=__version__, prog_name="devicemfa")
def main():
    """devicemfa - device-bound MFA with out-of-band code fallback."""
    pass


# ----------------------------------------------------------------------
# Server
# ----------------------------------------------------------------------


@main.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8000, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload")
def serve(host: str, port: int, reload: bool):
    """Start the credential authority server."""
    import uvicorn

    click.echo(f"🚀 Starting devicemfa server on {host}:{port}")
    if reload:
        click.echo("🔄 Auto-reload enabled")

    uvicorn.run("devicemfa.main:app", host=host, port=port, reload=reload)


@main.group()
def db():
    """Database management commands."""
    pass


@db.command("init")
@click.option("--database-url", help="Database URL (defaults to MFA_DATABASE_URL)")
def db_init(database_url: Optional[str]):
    """Create database tables."""
    from devicemfa.database import build_engine, init_db

    async def run():
        engine = build_engine(database_url) if database_url else None
        try:
            await init_db(engine)
        finally:
            if engine is not None:
                await engine.dispose()

    try:
        asyncio.run(run())
    except Exception as e:
        click.echo(f"❌ Database initialization failed: {e}")
        sys.exit(1)
    click.echo("✅ Database initialized successfully!")


@db.command("purge")
def db_purge():
    """Delete expired challenges and one-time codes."""
    from devicemfa.database import close_db
    from devicemfa.tasks.scheduler import BackgroundTaskScheduler

    async def run():
        try:
            return await BackgroundTaskScheduler(purge_interval_seconds=0).purge_expired_credentials()
        finally:
            await close_db()

    try:
        counts = asyncio.run(run())
    except Exception as e:
        click.echo(f"❌ Purge failed: {e}")
        sys.exit(1)
    click.echo(f"🧹 Purged {counts['challenges']} challenges and {counts['codes']} codes")


# ----------------------------------------------------------------------
# Device client
# ----------------------------------------------------------------------


@asynccontextmanager
async def _orchestrator(settings: ClientSettings) -> AsyncIterator[AuthenticationOrchestrator]:
    authenticator = ConsoleAuthenticator(
        passcode_hash=settings.passcode_hash,
        presence_consent=settings.presence_consent,
    )
    store = build_key_store(settings)
    api = MFAApiClient(settings.server_url, api_prefix=settings.api_prefix, timeout=settings.timeout)
    try:
        yield AuthenticationOrchestrator(
            api=api,
            keys=KeyManager(store, authenticator),
            classifier=CapabilityClassifier(authenticator, store),
            local_state=LocalEnrollmentState(settings.resolved_state_path),
        )
    finally:
        await api.close()
        store.close()


def _report(result: FlowResult) -> None:
    if result.succeeded:
        click.echo(f"✅ {result.message}")
        if result.token:
            click.echo(f"🔑 Token: {result.token}")
    elif result.state == FlowState.FAILED:
        click.echo(f"❌ {result.message}")
    else:
        click.echo(f"ℹ️  {result.message}")


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except ClientError as e:
        click.echo(f"❌ {e.message}")
        sys.exit(1)


async def _code_loop(orchestrator: AuthenticationOrchestrator, username: str, result: FlowResult) -> FlowResult:
    while result.state == FlowState.AWAITING_CODE:
        click.echo(f"📨 {result.message}")
        code = click.prompt("One-time code")
        result = await orchestrator.submit_code(username, code)
    return result


@main.group()
@click.pass_context
def client(ctx: click.Context):
    """Use this machine as an MFA device (MFA_CLIENT_* settings)."""
    ctx.obj = ClientSettings()


@client.command("status")
@click.pass_obj
def client_status(settings: ClientSettings):
    """Show local capability and enrollment."""

    async def run():
        async with _orchestrator(settings) as orchestrator:
            info = orchestrator.classifier.describe()
            record = orchestrator.local_state.record

        click.echo("📋 Device status:")
        click.echo(f"Capability: {info['capability']}")
        click.echo(f"Biometry: {info['biometry_type']}")
        click.echo(f"Passcode set: {info['passcode_set']}")
        click.echo(f"Hardware key store: {info['hardware_backed']}")
        click.echo(f"Device ID: {record.device_id}")
        if record.is_enrolled:
            click.echo(f"Enrolled as: {record.username} ({record.method.value})")
        else:
            click.echo("Enrolled: no")

    _run(run())


@client.command("enroll")
@click.argument("username")
@click.option("--address", help="Phone number for out-of-band codes, e.g. +15551234567")
@click.option("--device-model", help="Device description")
@click.option("--out-of-band", is_flag=True, help="Skip local keys and use codes only")
@click.pass_obj
def client_enroll(settings: ClientSettings, username: str, address: Optional[str], device_model: Optional[str], out_of_band: bool):
    """Enroll this device for USERNAME."""

    async def run():
        async with _orchestrator(settings) as orchestrator:
            if out_of_band:
                if not address:
                    raise click.UsageError("--address is required with --out-of-band")
                result = await orchestrator.enroll_out_of_band(username, address, device_model)
            else:
                result = await orchestrator.enroll(username, address, device_model)

            if result.state == FlowState.OFFER_FALLBACK:
                click.echo(f"⚠️  {result.message}")
                if result.fallback == Fallback.PASSCODE and click.confirm("Use passcode only?", default=True):
                    result = await orchestrator.accept_passcode_fallback()
                elif result.fallback == Fallback.OUT_OF_BAND and address and click.confirm(
                    f"Register for one-time codes sent to {address}?", default=True
                ):
                    result = await orchestrator.enroll_out_of_band(username, address, device_model)
                else:
                    result = await orchestrator.decline_fallback()

            _report(result)

    _run(run())


@client.command("login")
@click.argument("username")
@click.pass_obj
def client_login(settings: ClientSettings, username: str):
    """Sign in as USERNAME with this device."""

    async def run():
        async with _orchestrator(settings) as orchestrator:
            result = await orchestrator.authenticate(username)

            if result.state == FlowState.IDLE and click.confirm("Send a one-time code instead?", default=False):
                result = await orchestrator.request_code(username)

            result = await _code_loop(orchestrator, username, result)
            _report(result)

    _run(run())


@client.command("unenroll")
@click.confirmation_option(prompt="Remove this device's enrollment and keys?")
@click.pass_obj
def client_unenroll(settings: ClientSettings):
    """Remove this device's enrollment."""

    async def run():
        async with _orchestrator(settings) as orchestrator:
            _report(await orchestrator.unenroll())

    _run(run())


@client.command("upgrade")
@click.pass_obj
def client_upgrade(settings: ClientSettings):
    """Switch from one-time codes to a local key."""

    async def run():
        async with _orchestrator(settings) as orchestrator:
            result = await orchestrator.upgrade()
            if result.fallback == Fallback.PASSCODE and click.confirm("Use passcode only?", default=True):
                result = await orchestrator.accept_passcode_fallback()
            _report(result)

    _run(run())


@client.command("downgrade")
@click.pass_obj
def client_downgrade(settings: ClientSettings):
    """Switch to one-time codes and delete local keys."""

    async def run():
        async with _orchestrator(settings) as orchestrator:
            _report(await orchestrator.downgrade())

    _run(run())


@client.command("device-status")
@click.pass_obj
def client_device_status(settings: ClientSettings):
    """Show what the server knows about this device."""

    async def run():
        async with _orchestrator(settings) as orchestrator:
            status = await orchestrator.api.device_status(orchestrator.device_id)

        if not status.enrolled:
            click.echo(f"Device {status.device_id} is not enrolled")
            return
        click.echo(f"Device: {status.device_id}")
        click.echo(f"Method: {status.method.value}")
        click.echo(f"Has key: {status.has_key}")
        click.echo(f"Address: {status.address or '-'}")
        click.echo(f"Enrolled at: {status.enrolled_at}")
        click.echo(f"Last used at: {status.last_used_at or '-'}")

    _run(run())


@client.command("devices")
@click.argument("username")
@click.pass_obj
def client_devices(settings: ClientSettings, username: str):
    """List the devices the server has enrolled for USERNAME."""

    async def run():
        async with MFAApiClient(settings.server_url, api_prefix=settings.api_prefix, timeout=settings.timeout) as api:
            devices = await api.user_devices(username)

        if not devices:
            click.echo(f"No devices enrolled for {username}")
            return
        click.echo(f"📱 Devices for {username}:")
        for device in devices:
            key = "key" if device.has_key else "codes"
            click.echo(f"{device.device_id}  {device.method.value}  {key}  last used {device.last_used_at or '-'}")

    _run(run())


@client.command("hash-passcode")
def client_hash_passcode():
    """Print a passcode hash for MFA_CLIENT_PASSCODE_HASH."""
    passcode = click.prompt("New passcode", hide_input=True, confirmation_prompt=True)
    click.echo(hash_passcode(passcode))


if __name__ == "__main__":
    main()
