# cli.py
import asyncio
import traceback
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn

from pixelforge.config import DEFAULT_PORT, Settings
from pixelforge.core.contracts import BuildContext, BuildPaths, DevState, WatchOptions
from pixelforge.core.logger import BuildLogger
from pixelforge.core.orchestrator import BuildOrchestrator, BuildResult
from pixelforge.core.registry import create_registry
from pixelforge.core.watcher import FileWatcher
from plugins.core_logging import configure_logging

app = typer.Typer(name="pixelforge", help="pixelforge asset build orchestrator")

# --- 公共选项 ---
GAME_PATH = typer.Option(Path("."), "--game-path", help="Root of the game project.")
OUTPUT_PATH = typer.Option(..., "--game-output-path", help="Directory the built game is written to.")
PRODUCTION = typer.Option(False, "--production", help="Build for production.")
CLEAN = typer.Option(False, "--clean", help="Remove previous output before building.")
PLUGIN_FILTER = typer.Option(None, "--build-plugin-filter", help="Only run these build plugins (repeatable).")
ASSET_PATH = typer.Option(None, "--asset-path", hidden=True)
CLIENT_PATH = typer.Option(None, "--client-path", hidden=True)
BUILD_PATH = typer.Option(None, "--build-path", hidden=True)
CUSTOM_PLUGINS = typer.Option(True, "--custom-build-plugins/--no-custom-build-plugins", help="Load build plugins from the game's build directory.")
PORT = typer.Option(DEFAULT_PORT, "--port", help="Port for the dev server.")


def make_context(
    game_path: Path,
    game_output_path: Path,
    production: bool = False,
    clean: bool = False,
    build: bool = True,
    watch=False,
    asset_path: Optional[Path] = None,
    client_path: Optional[Path] = None,
    build_path: Optional[Path] = None,
) -> BuildContext:
    paths = BuildPaths.from_game_root(
        game_path, game_output_path,
        asset_root=asset_path, client_root=client_path, build_root=build_path,
    )
    return BuildContext(
        production=production,
        clean=clean,
        build=build,
        watch=watch,
        paths=paths,
        logger=BuildLogger(),
    )


async def orchestrate(
    ctx: BuildContext,
    plugin_filter: Optional[List[str]] = None,
    custom_build_plugins: bool = True,
    watcher: Optional[FileWatcher] = None,
) -> BuildResult:
    registry = create_registry(ctx.paths.build_root if custom_build_plugins else None)
    plugins = registry.load(plugin_filter, ctx.logger)
    subscribe = watcher.subscribe if watcher is not None else None
    result = await BuildOrchestrator(ctx, plugins, subscribe).run()

    typer.echo()
    if ctx.build:
        if result.success:
            typer.secho("Build complete", fg=typer.colors.GREEN)
        else:
            typer.secho(f"Build completed with {result.error_count} error(s)", fg=typer.colors.RED)
    return result


def print_unhandled() -> None:
    typer.secho("\n" + "=" * 80, fg=typer.colors.RED, err=True)
    typer.secho("Unhandled Exception", fg=typer.colors.RED, bold=True, err=True)
    typer.secho("=" * 80, fg=typer.colors.RED, err=True)
    traceback.print_exc()


def _run_main(main) -> None:
    """运行命令主体。未处理的异常打印横幅和堆栈，退出码 1。"""
    try:
        code = main()
    except typer.Exit:
        raise
    except Exception:
        print_unhandled()
        raise typer.Exit(code=1)
    if code:
        raise typer.Exit(code=code)


def _serve(fastapi_app, port: int) -> None:
    typer.echo(f"[server] Running at http://localhost:{port}")
    uvicorn.run(fastapi_app, host="127.0.0.1", port=port, log_config=None)


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL."),
):
    configure_logging(log_level)


@app.command("build")
def build_command(
    game_path: Path = GAME_PATH,
    game_output_path: Path = OUTPUT_PATH,
    production: bool = PRODUCTION,
    clean: bool = CLEAN,
    build_plugin_filter: Optional[List[str]] = PLUGIN_FILTER,
    asset_path: Optional[Path] = ASSET_PATH,
    client_path: Optional[Path] = CLIENT_PATH,
    build_path: Optional[Path] = BUILD_PATH,
    custom_build_plugins: bool = CUSTOM_PLUGINS,
    serve: bool = typer.Option(False, "--serve", help="Serve the output directory after building."),
    port: int = PORT,
    watch: bool = typer.Option(False, "--watch", help="Keep watching assets and rebuild on change."),
):
    """Builds a game."""
    ctx = make_context(
        game_path, game_output_path, production, clean,
        watch=watch, asset_path=asset_path, client_path=client_path, build_path=build_path,
    )

    if watch or serve:
        from pixelforge.app import create_app

        watcher = FileWatcher() if watch else None
        outcome = {}

        def main():
            if not serve:
                return asyncio.run(build_and_watch(ctx, build_plugin_filter, custom_build_plugins, watcher, outcome))
            if watcher is None:
                # 先完成构建再提供服务，构建失败时不启动服务
                result = asyncio.run(orchestrate(ctx, build_plugin_filter, custom_build_plugins))
                if not result.success:
                    return 1
                _serve(create_app(serve_root=ctx.paths.output_root), port)
                return 0
            def startup():
                return build_and_watch(ctx, build_plugin_filter, custom_build_plugins, watcher, outcome)

            _serve(create_app(serve_root=ctx.paths.output_root, on_startup=startup), port)
            return outcome.get("code", 0)

        _run_main(main)
        return

    def main():
        result = asyncio.run(orchestrate(ctx, build_plugin_filter, custom_build_plugins))
        return 0 if result.success else 1

    _run_main(main)


async def build_and_watch(
    ctx: BuildContext,
    plugin_filter: Optional[List[str]],
    custom_build_plugins: bool,
    watcher: FileWatcher,
    outcome: dict,
) -> int:
    """构建一次，然后保持监听直到被取消。outcome["code"] 记录退出码。"""
    try:
        try:
            await orchestrate(ctx, plugin_filter, custom_build_plugins, watcher)
        except Exception:
            print_unhandled()
            outcome["code"] = 1
            return 1
        typer.echo("Watching for changes, press Ctrl+C to stop.")
        await asyncio.Event().wait()
    finally:
        await watcher.close()
        if "code" not in outcome:
            outcome["code"] = 1 if ctx.logger.error_count else 0
    return outcome["code"]


@app.command("run")
def run_command(
    game_path: Path = GAME_PATH,
    game_output_path: Path = OUTPUT_PATH,
    production: bool = PRODUCTION,
    clean: bool = CLEAN,
    build_plugin_filter: Optional[List[str]] = PLUGIN_FILTER,
    asset_path: Optional[Path] = ASSET_PATH,
    client_path: Optional[Path] = CLIENT_PATH,
    build_path: Optional[Path] = BUILD_PATH,
    custom_build_plugins: bool = CUSTOM_PLUGINS,
    port: int = PORT,
):
    """Builds a game, watches it, and starts the dev server and editor."""
    from pixelforge.app import create_app
    from pixelforge.editor.host import EditorServerHost

    ctx = make_context(
        game_path, game_output_path, production, clean,
        watch=WatchOptions(port=port), asset_path=asset_path, client_path=client_path, build_path=build_path,
    )
    settings = Settings.from_env()
    watcher = FileWatcher(debounce_ms=settings.watch_debounce_ms, step_ms=settings.watch_step_ms)

    host = None
    if production:
        typer.secho("[editor] Disabled in production builds", fg=typer.colors.RED)
    else:
        host = EditorServerHost(ctx.paths, port, settings=settings, watcher=watcher, production=production)
        ctx.dev_state = DevState(port=port, sink=host)

    outcome = {}

    def startup():
        return build_and_watch(ctx, build_plugin_filter, custom_build_plugins, watcher, outcome)

    def main():
        _serve(create_app(host=host, serve_root=ctx.paths.output_root, on_startup=startup), port)
        return outcome.get("code", 0)

    _run_main(main)


@app.command("clean")
def clean_command(
    game_path: Path = GAME_PATH,
    game_output_path: Path = OUTPUT_PATH,
    build_plugin_filter: Optional[List[str]] = PLUGIN_FILTER,
    asset_path: Optional[Path] = ASSET_PATH,
    client_path: Optional[Path] = CLIENT_PATH,
    build_path: Optional[Path] = BUILD_PATH,
    custom_build_plugins: bool = CUSTOM_PLUGINS,
):
    """Cleans all built game output."""
    ctx = make_context(
        game_path, game_output_path, production=False, clean=True, build=False,
        asset_path=asset_path, client_path=client_path, build_path=build_path,
    )

    def main():
        result = asyncio.run(orchestrate(ctx, build_plugin_filter, custom_build_plugins))
        return 0 if result.success else 1

    _run_main(main)


if __name__ == "__main__":
    app()
