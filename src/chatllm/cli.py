"""Click-based CLI for ChatLLM."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console

from chatllm import __version__
from chatllm.config import ChatLLMConfig, load_config

if TYPE_CHECKING:
    from collections.abc import Iterator

    from chatllm.models.manager import LifecycleController
    from chatllm.models.state import ModelEntry

logger = logging.getLogger("chatllm")

_EXIT_COMMANDS = frozenset({"/exit", "/quit"})


def _build_controller(config: ChatLLMConfig) -> LifecycleController:
    from chatllm.models.manager import LifecycleController

    return LifecycleController.from_config(config)


def _resolve_entry(controller: LifecycleController, model_id: str) -> ModelEntry:
    """Find an entry by id or filename."""
    for entry in controller.entries:
        if model_id in (entry.id, entry.descriptor.filename):
            return entry
    known = ", ".join(e.id for e in controller.entries)
    raise click.BadParameter(f"Unknown model {model_id!r}. Known: {known}", param_hint="MODEL_ID")


@contextlib.contextmanager
def _stop_on_interrupt(controller: LifecycleController) -> Iterator[None]:
    """Route Ctrl-C to ``controller.stop()`` while a reply is streaming."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.stop)
        installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        installed = False
    try:
        yield
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _stream_reply(controller: LifecycleController, turns: list) -> str:
    pieces: list[str] = []
    with _stop_on_interrupt(controller):
        async for piece in controller.generate(turns):
            pieces.append(piece)
            click.echo(piece, nl=False)
    click.echo()
    return "".join(pieces).strip()


@click.group()
@click.version_option(version=__version__, prog_name="chatllm")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to user config TOML file.",
)
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for model files and settings (overrides config).",
)
@click.option("-v", "--verbose", is_flag=True, default=False, help="Verbose output.")
@click.option("-q", "--quiet", is_flag=True, default=False, help="Suppress all output.")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Path | None,
    data_dir: Path | None,
    verbose: bool,
    quiet: bool,
) -> None:
    """ChatLLM -- download local language models and chat with them."""
    ctx.ensure_object(dict)
    cfg = load_config(user_config_path=config_path, data_dir=data_dir)
    ctx.obj = {
        "config": cfg,
        "config_path": config_path,
        "data_dir": data_dir,
        "verbose": verbose,
        "quiet": quiet,
    }

    # Configure logging
    level = logging.DEBUG if verbose else getattr(
        logging, cfg.general.log_level.upper(), logging.WARNING
    )
    if quiet:
        level = logging.CRITICAL
    logging.basicConfig(level=level, format="%(name)s: %(message)s", stream=sys.stderr)
    logger.debug("Data directory: %s", cfg.data_dir)


@main.command(name="models")
@click.option(
    "--output-format",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Listing format.",
)
@click.pass_context
def models_cmd(ctx: click.Context, output_format: str) -> None:
    """List known models and their download state."""
    import json as json_mod

    from rich.table import Table

    from chatllm.models.state import describe_state
    from chatllm.preferences import SELECTED_MODEL_KEY, JsonKeyValueStore

    obj = ctx.obj
    config: ChatLLMConfig = obj["config"]
    controller = _build_controller(config)

    # Selection is only marked on load; show the persisted one without loading.
    selected = JsonKeyValueStore(config.settings_path).get(SELECTED_MODEL_KEY)

    if output_format == "json":
        rows = []
        for entry in controller.entries:
            data = entry.to_dict()
            data["is_selected"] = entry.descriptor.filename == selected
            rows.append(data)
        click.echo(json_mod.dumps(rows, indent=2))
        return

    table = Table(title="Models", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="blue")
    table.add_column("Size")
    table.add_column("State", style="green")
    table.add_column("Selected")

    for entry in controller.entries:
        table.add_row(
            entry.id,
            entry.descriptor.name,
            entry.descriptor.size,
            describe_state(entry.state),
            "*" if entry.descriptor.filename == selected else "",
        )

    Console(quiet=obj["quiet"]).print(table)


@main.command()
@click.argument("model_id")
@click.pass_context
def download(ctx: click.Context, model_id: str) -> None:
    """Download a model into the models directory."""
    from chatllm.models.state import Downloaded, Failed
    from chatllm.progress import DownloadProgressReporter

    obj = ctx.obj
    config: ChatLLMConfig = obj["config"]
    console = Console(stderr=True, quiet=obj["quiet"])

    async def _run() -> object:
        controller = _build_controller(config)
        entry = _resolve_entry(controller, model_id)
        reporter = DownloadProgressReporter(console, quiet=obj["quiet"])
        unsubscribe = controller.add_listener(reporter.callback)
        reporter.start(entry)
        try:
            return await controller.download(entry.id)
        finally:
            reporter.finish(entry)
            unsubscribe()
            await controller.shutdown()

    state = asyncio.run(_run())
    if isinstance(state, Failed):
        raise click.ClickException(state.message)
    if isinstance(state, Downloaded):
        click.echo(f"Saved: {state.path}")


@main.command()
@click.argument("model_id")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.pass_context
def delete(ctx: click.Context, model_id: str, yes: bool) -> None:
    """Delete a downloaded model file."""
    from chatllm.errors import StoreError

    config: ChatLLMConfig = ctx.obj["config"]

    async def _run() -> bool:
        controller = _build_controller(config)
        try:
            entry = _resolve_entry(controller, model_id)
            if not entry.is_downloaded:
                raise click.ClickException(f"{entry.descriptor.name} is not downloaded.")
            if not yes:
                click.confirm(f"Delete {entry.descriptor.name}?", abort=True)
            return await controller.delete(entry.id)
        except StoreError as exc:
            raise click.ClickException(str(exc)) from exc
        finally:
            await controller.shutdown()

    if asyncio.run(_run()):
        click.echo(f"Deleted: {model_id}")


@main.command()
@click.argument("model_id")
@click.pass_context
def select(ctx: click.Context, model_id: str) -> None:
    """Load a downloaded model and make it the active one."""
    config: ChatLLMConfig = ctx.obj["config"]

    async def _run() -> tuple[bool, str]:
        controller = _build_controller(config)
        try:
            entry = _resolve_entry(controller, model_id)
            if not entry.is_downloaded:
                raise click.ClickException(
                    f"{entry.descriptor.name} is not downloaded. Run: chatllm download {entry.id}"
                )
            return await controller.select(entry.id), entry.descriptor.name
        finally:
            await controller.shutdown()

    ok, name = asyncio.run(_run())
    if not ok:
        raise click.ClickException(f"Could not load {name}. See log output for details.")
    click.echo(f"Selected: {name}")


@main.command()
@click.argument("prompt", nargs=-1, required=True)
@click.pass_context
def ask(ctx: click.Context, prompt: tuple[str, ...]) -> None:
    """Ask the selected model a single question and stream the answer."""
    from chatllm.inference.prompt import ConversationTurn

    config: ChatLLMConfig = ctx.obj["config"]
    text = " ".join(prompt)

    async def _run() -> None:
        controller = _build_controller(config)
        try:
            await controller.startup()
            await _stream_reply(controller, [ConversationTurn.user(text)])
        finally:
            await controller.shutdown()

    asyncio.run(_run())


@main.command()
@click.pass_context
def chat(ctx: click.Context) -> None:
    """Interactive chat with the selected model.

    Ctrl-C stops the current reply. Type /reset to forget the conversation
    and /exit to quit.
    """
    from chatllm.inference.prompt import Conversation

    obj = ctx.obj
    config: ChatLLMConfig = obj["config"]
    console = Console(stderr=True, quiet=obj["quiet"])

    async def _run() -> None:
        controller = _build_controller(config)
        conversation = Conversation()
        try:
            with console.status("Loading model..."):
                await controller.startup()
            if not controller.is_model_ready:
                raise click.ClickException(
                    "No model selected. Run: chatllm select MODEL_ID"
                )
            console.print(f"[bold]{controller.current_model_name}[/bold] ready.")

            while True:
                try:
                    text = await asyncio.to_thread(click.prompt, "You", prompt_suffix="> ")
                except (EOFError, click.Abort):
                    break
                text = text.strip()
                if not text:
                    continue
                if text in _EXIT_COMMANDS:
                    break
                if text == "/reset":
                    conversation.clear()
                    console.print("[dim]Conversation cleared.[/dim]")
                    continue

                conversation.add_user(text)
                click.echo(f"{controller.current_model_name}> ", nl=False)
                reply = await _stream_reply(controller, conversation.turns)
                if reply:
                    conversation.add_assistant(reply)
        finally:
            await controller.shutdown()

    asyncio.run(_run())


@main.command(name="config")
@click.option("--set", "set_kv", nargs=2, multiple=True, help="Set KEY VALUE.")
@click.pass_context
def config_cmd(
    ctx: click.Context,
    set_kv: tuple[tuple[str, str], ...],
) -> None:
    """View the resolved ChatLLM configuration."""
    import json as json_mod

    from rich.syntax import Syntax

    obj = ctx.obj
    config: ChatLLMConfig = obj["config"]
    console = Console(quiet=obj["quiet"])

    if set_kv:
        config = load_config(
            user_config_path=obj["config_path"],
            cli_overrides=dict(set_kv),
            data_dir=obj["data_dir"],
        )

    config_dict = {
        "general": {
            "data_dir": str(config.data_dir),
            "models_dir": str(config.models_dir),
            "settings_path": str(config.settings_path),
            "log_level": config.general.log_level,
        },
        "download": {
            "user_agent": config.download.user_agent,
            "timeout_seconds": config.download.timeout_seconds,
            "progress_step": config.download.progress_step,
        },
        "inference": {
            "system_prompt": config.inference.system_prompt,
            "n_ctx": config.inference.n_ctx,
            "n_threads": config.inference.n_threads,
            "max_tokens": config.inference.max_tokens,
            "temperature": config.inference.temperature,
        },
        "catalog": [d.id for d in config.models],
    }

    json_str = json_mod.dumps(config_dict, indent=2)
    syntax = Syntax(json_str, "json", theme="monokai")
    console.print(syntax)
