"""Click CLI for kbexplorer."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import fields
from typing import Any, Optional, TypeVar

import click
from trogon import tui

from kbexplorer.auth import AuthContext, fetch_token
from kbexplorer.config import ExplorerConfig
from kbexplorer.errors import ConfigurationError, KBExplorerError
from kbexplorer.models import IndexStatus, Resource
from kbexplorer.session import ExplorerSession
from kbexplorer.storage import KeyValueStore

T = TypeVar("T")

STATUS_MARKERS = {
    IndexStatus.INDEXED: "●",
    IndexStatus.INDEXING: "◐",
    IndexStatus.NOT_INDEXED: "○",
    None: "?",
}

WAIT_STEP = 0.1


@tui()
@click.group()
@click.version_option(version="0.1.0", prog_name="kbexplorer")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr")
@click.option(
    "--online/--offline",
    default=None,
    help="Talk to the backend, or use bundled sample data (default: from config)",
)
@click.option("--kb", "knowledge_base_id", help="Knowledge base to work in (default: first one)")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, online: Optional[bool], knowledge_base_id: Optional[str]) -> None:
    """kbexplorer - Browse connector files and manage knowledge base indexing.

    Quick start:
        kbexplorer ls                 List the root of the first connection
        kbexplorer ls "My Documents"  List a directory
        kbexplorer index ID           Index a resource into the knowledge base
        kbexplorer tui                Launch command explorer (Trogon)
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    config = ExplorerConfig.load()
    if online is not None:
        config.online = online
    ctx.obj = {"config": config, "knowledge_base_id": knowledge_base_id}


# =============================================================================
# Session plumbing
# =============================================================================


def _open_storage(config: ExplorerConfig) -> KeyValueStore:
    return KeyValueStore.from_path(config.resolve_storage_path())


def _run_session(
    ctx: click.Context,
    body: Callable[[ExplorerSession], Awaitable[T]],
    auto_select_knowledge_base: bool = True,
) -> T:
    """Start a session, run ``body`` against it, and close everything."""
    config: ExplorerConfig = ctx.obj["config"]
    knowledge_base_id: Optional[str] = ctx.obj.get("knowledge_base_id")

    async def main() -> T:
        storage = _open_storage(config)
        auth = AuthContext(storage).load()
        session = ExplorerSession(
            config,
            auth,
            storage=storage,
            auto_select_knowledge_base=auto_select_knowledge_base and not knowledge_base_id,
        )
        try:
            if session.online and not auth.is_authenticated:
                raise click.ClickException("Not logged in. Run: kbexplorer login EMAIL")
            if knowledge_base_id and auto_select_knowledge_base:
                session.select_knowledge_base(knowledge_base_id)
            await session.start()
            return await body(session)
        finally:
            await session.close()
            storage.close()

    try:
        return asyncio.run(main())
    except KBExplorerError as e:
        raise click.ClickException(str(e)) from e


async def _walk(session: ExplorerSession, parent_id: Optional[str] = None) -> AsyncIterator[Resource]:
    """Every resource under ``parent_id``, depth first, across all pages."""
    cursor = None
    while True:
        page = await session.client.list_resources(
            session.auth, session.connection_id, parent_id=parent_id, cursor=cursor
        )
        for resource in page.items:
            yield resource
            if resource.is_directory:
                async for child in _walk(session, resource.resource_id):
                    yield child
        if not page.has_next:
            return
        cursor = page.next_cursor


async def _resolve(session: ExplorerSession, resource_ids: Iterable[str]) -> list[Resource]:
    """Look resources up by id, in the order given."""
    wanted = list(dict.fromkeys(resource_ids))
    found = {r.resource_id: r for r in session.known_resources() if r.resource_id in wanted}
    if len(found) < len(wanted) and session.connection_id:
        async for resource in _walk(session):
            if resource.resource_id in wanted:
                found.setdefault(resource.resource_id, resource)
                if len(found) == len(wanted):
                    break
    missing = [i for i in wanted if i not in found]
    if missing:
        raise click.ClickException(f"Resource(s) not found: {', '.join(missing)}")
    return [found[i] for i in wanted]


async def _find_on_pages(session: ExplorerSession, name: str) -> Optional[Resource]:
    """Page through the current listing looking for a directory by name."""
    while True:
        await session.refresh()
        for resource in session.resources:
            if resource.is_directory and resource.name == name:
                return resource
        if not session.next_page():
            return None


async def _wait_for_pending(session: ExplorerSession, timeout: float) -> bool:
    """Wait until polling has confirmed every pending operation."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.pending_count and loop.time() < deadline:
        await asyncio.sleep(WAIT_STEP)
    return session.pending_count == 0


def _echo_resources(resources: list[Resource], show_ids: bool) -> None:
    for resource in resources:
        marker = STATUS_MARKERS[resource.status]
        name = f"{resource.name}/" if resource.is_directory else resource.name
        line = f"  {marker} {name}"
        if show_ids:
            line += f"  [{resource.resource_id}]"
        click.echo(line)


def _echo_errors(session: ExplorerSession) -> bool:
    for error in session.orchestrator.errors:
        click.echo(f"Error: {error}", err=True)
    return bool(session.orchestrator.errors)


# =============================================================================
# Auth
# =============================================================================


@cli.command()
@click.argument("email")
@click.password_option(confirmation_prompt=False)
@click.pass_context
def login(ctx: click.Context, email: str, password: str) -> None:
    """Sign in with email and password and remember the token."""
    config: ExplorerConfig = ctx.obj["config"]
    if not config.auth_url or not config.auth_anon_key:
        raise click.ClickException(
            "Auth is not configured. Set auth_url and auth_anon_key "
            "(kbexplorer config set KEY VALUE)."
        )
    try:
        token = asyncio.run(fetch_token(config.auth_url, config.auth_anon_key, email, password))
    except KBExplorerError as e:
        raise click.ClickException(str(e)) from e

    storage = _open_storage(config)
    try:
        AuthContext(storage).set_token(token)
    finally:
        storage.close()
    click.echo(f"✓ Logged in as {email}")


@cli.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Forget the stored token."""
    storage = _open_storage(ctx.obj["config"])
    try:
        AuthContext(storage).load().logout()
    finally:
        storage.close()
    click.echo("✓ Logged out")


# =============================================================================
# Config Commands
# =============================================================================


@cli.group("config")
def config_group() -> None:
    """Show or change persistent settings."""
    pass


@config_group.command("show")
def config_show() -> None:
    """Show current settings."""
    config = ExplorerConfig.load()
    click.echo(f"Config file: {ExplorerConfig.get_config_path()}")
    for f in fields(config):
        click.echo(f"  {f.name} = {getattr(config, f.name)}")


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set KEY to VALUE and save."""
    config = ExplorerConfig.load()
    try:
        config.set_value(key, value)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    config.save()
    click.echo(f"✓ {key} = {getattr(config, key)}")


@config_group.command("reset")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def config_reset(yes: bool) -> None:
    """Restore default settings."""
    if not yes:
        click.confirm("Reset all settings to defaults?", abort=True)
    config = ExplorerConfig()
    config.save()
    click.echo("✓ Settings reset to defaults")


# =============================================================================
# Browsing
# =============================================================================


@cli.command()
@click.pass_context
def connections(ctx: click.Context) -> None:
    """List connector accounts."""

    async def body(session: ExplorerSession) -> None:
        items = session.cache.get_data(session.connections_key()) or []
        if not items:
            click.echo("No connections found.")
            return
        click.echo("\n🔌 Connections:")
        for connection in items:
            active = "*" if connection.connection_id == session.connection_id else " "
            click.echo(f"  {active} {connection.name or '(unnamed)'}  [{connection.connection_id}]")

    _run_session(ctx, body)


@cli.command()
@click.pass_context
def kbs(ctx: click.Context) -> None:
    """List knowledge bases."""

    async def body(session: ExplorerSession) -> None:
        items = session.cache.get_data(session.knowledge_bases_key()) or []
        if not items:
            click.echo("No knowledge bases found.")
            return
        click.echo("\n📚 Knowledge Bases:")
        for kb in items:
            active = "*" if kb.knowledge_base_id == session.knowledge_base_id else " "
            sources = len(kb.connection_source_ids)
            click.echo(f"  {active} {kb.name or '(unnamed)'}  [{kb.knowledge_base_id}] {sources} source(s)")

    _run_session(ctx, body)


@cli.command()
@click.argument("path", nargs=-1)
@click.option("--search", "-s", help="Search the whole connection instead of browsing")
@click.option("--page", "-p", default=1, type=click.IntRange(min=1), help="Page number")
@click.option("--ids", is_flag=True, help="Show resource ids")
@click.pass_context
def ls(ctx: click.Context, path: tuple[str, ...], search: Optional[str], page: int, ids: bool) -> None:
    """List a directory (PATH segments from the root) with index status.

    Markers: ● indexed, ◐ indexing, ○ not indexed, ? unknown.
    """
    segments = [s for s in "/".join(path).split("/") if s]

    async def body(session: ExplorerSession) -> None:
        if session.connection_id is None:
            click.echo("No connections found.")
            return
        if search:
            session.set_search_term(search)
            session.navigation.flush_search()
        else:
            for segment in segments:
                directory = await _find_on_pages(session, segment)
                if directory is None:
                    raise click.ClickException(f"No directory named {segment!r}")
                session.descend(directory)
        await session.refresh()
        for _ in range(page - 1):
            if not session.next_page():
                break
            await session.refresh()

        view = session.view()
        crumbs = " / ".join(label for _, label in view.breadcrumbs)
        heading = f"Search: {view.search_term}" if view.search_term else crumbs
        click.echo(f"\n📁 {heading}  (page {view.page_index + 1})")
        if view.error:
            click.echo(f"Error: {view.error}", err=True)
        if not view.resources:
            click.echo("  (empty)")
        _echo_resources(view.resources, ids)
        if view.has_next_page:
            click.echo(f"\nMore: --page {view.page_index + 2}")

    _run_session(ctx, body)


# =============================================================================
# Indexing
# =============================================================================


def _mutate(ctx: click.Context, resource_ids: tuple[str, ...], deindex: bool, wait: bool, timeout: float) -> None:
    verb = "Deindexed" if deindex else "Indexed"

    async def body(session: ExplorerSession) -> None:
        if not session.knowledge_base_id:
            raise click.ClickException("No knowledge base. Create one with: kbexplorer create ID...")
        resources = await _resolve(session, resource_ids)
        for resource in resources:
            if deindex:
                session.orchestrator.deindex(resource)
            else:
                session.orchestrator.index(resource)
        await session.settle()
        if _echo_errors(session):
            raise click.ClickException(f"{len(session.orchestrator.errors)} operation(s) failed")
        if wait and not await _wait_for_pending(session, timeout):
            click.echo(f"Still pending after {timeout:g}s: {session.pending_count} resource(s)")
            return
        click.echo(f"✓ {verb} {len(resources)} resource(s)")

    _run_session(ctx, body)


@cli.command()
@click.argument("resource_ids", nargs=-1, required=True)
@click.option("--wait/--no-wait", default=True, help="Wait until the backend confirms")
@click.option("--timeout", default=60.0, help="Seconds to wait for confirmation")
@click.pass_context
def index(ctx: click.Context, resource_ids: tuple[str, ...], wait: bool, timeout: float) -> None:
    """Add resources to the active knowledge base."""
    _mutate(ctx, resource_ids, deindex=False, wait=wait, timeout=timeout)


@cli.command()
@click.argument("resource_ids", nargs=-1, required=True)
@click.option("--wait/--no-wait", default=True, help="Wait until the backend confirms")
@click.option("--timeout", default=60.0, help="Seconds to wait for confirmation")
@click.pass_context
def deindex(ctx: click.Context, resource_ids: tuple[str, ...], wait: bool, timeout: float) -> None:
    """Remove resources from the active knowledge base."""
    _mutate(ctx, resource_ids, deindex=True, wait=wait, timeout=timeout)


@cli.command()
@click.argument("resource_ids", nargs=-1, required=True)
@click.option("--wait/--no-wait", default=True, help="Wait until indexing is confirmed")
@click.option("--timeout", default=60.0, help="Seconds to wait for confirmation")
@click.pass_context
def create(ctx: click.Context, resource_ids: tuple[str, ...], wait: bool, timeout: float) -> None:
    """Create a knowledge base from the given resources and sync it.

    Resources inside a selected directory are covered by it and are not
    sent separately.
    """

    async def body(session: ExplorerSession) -> None:
        for resource in await _resolve(session, resource_ids):
            session.toggle_resource(resource)
        kb = await session.create_and_sync_knowledge_base()
        if kb is None:
            raise click.ClickException("Cannot create a knowledge base (see log with --verbose)")
        click.echo(f"✓ Created knowledge base: {kb.knowledge_base_id}")
        click.echo(f"  Sources: {len(kb.connection_source_ids)}")
        if wait and not await _wait_for_pending(session, timeout):
            click.echo(f"  Still indexing after {timeout:g}s: {session.pending_count} resource(s)")

    _run_session(ctx, body, auto_select_knowledge_base=False)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show mode, login and the active connection and knowledge base."""
    config: ExplorerConfig = ctx.obj["config"]

    async def body(session: ExplorerSession) -> dict[str, Any]:
        membership = session.membership
        return {
            "connection": session.connection_id,
            "knowledge_base": session.knowledge_base_id,
            "indexed": len(membership) if membership is not None else None,
            "error": session.error,
        }

    storage = _open_storage(config)
    try:
        logged_in = AuthContext(storage).load().is_authenticated
    finally:
        storage.close()

    click.echo(f"\nMode: {'online' if config.online else 'offline (sample data)'}")
    if config.online:
        click.echo(f"Backend: {config.backend_url or 'not set'}")
    click.echo(f"Logged in: {'yes' if logged_in else 'no'}")
    if config.online and not logged_in:
        return

    info = _run_session(ctx, body)
    click.echo(f"Connection: {info['connection'] or 'none'}")
    click.echo(f"Knowledge base: {info['knowledge_base'] or 'none'}")
    if info["indexed"] is not None:
        click.echo(f"Indexed resources: {info['indexed']}")
    if info["error"] is not None:
        click.echo(f"Error: {info['error']}", err=True)


if __name__ == "__main__":
    cli()
