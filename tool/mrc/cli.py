"""
CLI エントリポイント: Typer ベースのコマンドラインインターフェース

mrc コマンドとして以下のサブコマンドを提供する:
  - validate: ステップ文書の検証
  - show: ステップ一覧の表示
  - flatten: グループを展開した実行順の表示
  - push: ステップ文書を実行器へ送信
  - run: ステップ文書を実行器で実行
  - stop: 実行中の自動実行を停止
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from mrc.config import ClientConfig, apply_cli_args, load_config_from_env

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Typer アプリ定義
# ---------------------------------------------------------------------------

app = typer.Typer(
    help=(
        "mrc: マクロ記録ツールのクライアント\n\n"
        "基本の流れ:\n"
        "  1. mrc validate steps.json   保存したステップ文書を検証\n"
        "  2. mrc run steps.json        実行器でステップを実行\n\n"
        "詳しくは各コマンドに --help を付けてください。"
    ),
    no_args_is_help=True,
)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="ログレベル (DEBUG / INFO / WARNING / ERROR)",
    ),
) -> None:
    """ログ出力を設定する。"""
    config = apply_cli_args(load_config_from_env(), log_level=log_level)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(url: Optional[str]) -> ClientConfig:
    return apply_cli_args(load_config_from_env(), server_url=url)


def _build_client(config: ClientConfig):  # type: ignore[no-untyped-def]
    """MacroClient を生成する（テストではこの関数を差し替える）。"""
    from mrc.client.app import MacroClient
    from mrc.client.notify import LoggingNotifier

    return MacroClient(config, notifier=LoggingNotifier())


async def _connect(client, timeout: float) -> None:  # type: ignore[no-untyped-def]
    from mrc.errors import NotConnectedError

    await client.start()
    if not await client.connection.wait_connected(timeout):
        await client.close()
        raise NotConnectedError(
            "connect",
            f"実行器に接続できませんでした: {client.config.server_url} ({timeout:g} 秒で時間切れ)",
        )


# ---------------------------------------------------------------------------
# validate コマンド
# ---------------------------------------------------------------------------

@app.command()
def validate(
    file: Path = typer.Argument(..., help="検証するステップ文書（.json / .yaml）"),
) -> None:
    """ステップ文書の構造を検証する。"""
    from mrc.persistence.document import validate_file

    issues = validate_file(file)
    if not issues:
        typer.echo(f"✓ {file}: 検証 OK")
        return
    for issue in issues:
        typer.echo(f"✗ {issue.location}: {issue.message}", err=True)
    raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# show コマンド
# ---------------------------------------------------------------------------

def _echo_tree(steps, indent: int = 0) -> None:  # type: ignore[no-untyped-def]
    from mrc.model.schema import describe_step

    for i, step in enumerate(steps, start=1):
        typer.echo(f"{'  ' * indent}{i:3d}. {describe_step(step)}  (wait {step.data.wait_time}s)")
        if step.is_group:
            _echo_tree(step.children, indent + 1)


@app.command()
def show(
    file: Path = typer.Argument(..., help="表示するステップ文書"),
) -> None:
    """ステップ一覧を番号付きで表示する。"""
    from mrc.errors import DocumentValidationError
    from mrc.persistence.document import load

    try:
        result = load(file)
    except DocumentValidationError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    if result.timestamp:
        typer.echo(f"保存日時: {result.timestamp} (version {result.version})")
    _echo_tree(result.steps)
    typer.echo(f"\n合計: {result.count} ステップ")


# ---------------------------------------------------------------------------
# flatten コマンド
# ---------------------------------------------------------------------------

@app.command()
def flatten(
    file: Path = typer.Argument(..., help="展開するステップ文書"),
    recursive: bool = typer.Option(False, "--recursive", "-r", help="ネストしたグループも展開する"),
    as_json: bool = typer.Option(False, "--json", help="展開結果を JSON で出力する"),
) -> None:
    """グループを展開した実行順のステップ列を表示する。"""
    from mrc.editor.flatten import flatten as flatten_steps
    from mrc.errors import MacroClientError
    from mrc.model.schema import describe_step
    from mrc.persistence.document import load

    try:
        leaves = flatten_steps(load(file).steps, recursive=recursive)
    except MacroClientError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps([s.to_wire() for s in leaves], ensure_ascii=False, indent=2))
        return
    for i, step in enumerate(leaves, start=1):
        typer.echo(f"{i:4d}. {describe_step(step)}")
    typer.echo(f"\n合計: {len(leaves)} ステップ")


# ---------------------------------------------------------------------------
# push コマンド
# ---------------------------------------------------------------------------

@app.command()
def push(
    file: Path = typer.Argument(..., help="送信するステップ文書"),
    url: Optional[str] = typer.Option(None, "--url", help="実行器の WebSocket URL"),
    connect_timeout: float = typer.Option(5.0, "--connect-timeout", help="接続待ちの秒数"),
) -> None:
    """ステップ文書を実行器のステップリストとして送信する。"""
    from mrc.errors import MacroClientError
    from mrc.persistence.document import load
    from mrc.protocol import messages

    async def _push() -> int:
        result = load(file)
        client = _build_client(_load_config(url))
        await _connect(client, connect_timeout)
        try:
            client.store.import_steps(result.steps)
            client.connection.send(messages.update_steps_order(client.store.steps))
            await client.connection.flush()
        finally:
            await client.close()
        return result.count

    try:
        count = asyncio.run(_push())
    except MacroClientError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"{count} ステップを送信しました")


# ---------------------------------------------------------------------------
# run コマンド
# ---------------------------------------------------------------------------

@app.command()
def run(
    file: Path = typer.Argument(..., help="実行するステップ文書"),
    loops: int = typer.Option(1, "--loops", "-n", help="繰り返し回数"),
    forever: bool = typer.Option(False, "--forever", help="停止するまで繰り返す（loop_count=-1）"),
    recursive: bool = typer.Option(False, "--recursive", "-r", help="ネストしたグループも展開する"),
    url: Optional[str] = typer.Option(None, "--url", help="実行器の WebSocket URL"),
    connect_timeout: float = typer.Option(5.0, "--connect-timeout", help="接続待ちの秒数"),
) -> None:
    """ステップ文書を実行器で実行し、完了まで待つ。Ctrl+C で停止を送る。"""
    from mrc.editor.flatten import flatten as flatten_steps
    from mrc.errors import MacroClientError, NotConnectedError
    from mrc.model.schema import RunStatus
    from mrc.persistence.document import load

    loop_count = -1 if forever else loops

    async def _run() -> None:
        result = load(file)
        leaves = flatten_steps(result.steps, recursive=recursive)
        client = _build_client(_load_config(url))
        finished = asyncio.Event()
        disconnected = False

        def _on_run_state(old: RunStatus, new: RunStatus) -> None:
            nonlocal disconnected
            if old is RunStatus.RUNNING and new is RunStatus.IDLE:
                # 切断による強制 IDLE は完了として扱わない
                disconnected = not client.is_connected
                finished.set()

        client.runner.add_listener(_on_run_state)
        await _connect(client, connect_timeout)
        try:
            client.store.import_steps(result.steps)
            client.runner.run_automation(leaves, loop_count)
            typer.echo(f"実行を開始しました: {len(leaves)} ステップ, loop_count={loop_count}")
            try:
                await finished.wait()
            except asyncio.CancelledError:
                if client.runner.is_running and client.is_connected:
                    client.runner.stop_automation()
                    await client.connection.flush()
                raise
            if disconnected:
                raise NotConnectedError(
                    "run_automation", "実行中に実行器との接続が切れました。実行結果は不明です"
                )
        finally:
            await client.close()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("停止しました")
        raise typer.Exit(code=130)
    except MacroClientError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo("実行が完了しました")


# ---------------------------------------------------------------------------
# stop コマンド
# ---------------------------------------------------------------------------

@app.command()
def stop(
    url: Optional[str] = typer.Option(None, "--url", help="実行器の WebSocket URL"),
    connect_timeout: float = typer.Option(5.0, "--connect-timeout", help="接続待ちの秒数"),
) -> None:
    """実行中の自動実行を停止する。"""
    from mrc.errors import MacroClientError

    async def _stop() -> None:
        client = _build_client(_load_config(url))
        await _connect(client, connect_timeout)
        try:
            client.runner.stop_automation()
            await client.connection.flush()
        finally:
            await client.close()

    try:
        asyncio.run(_stop())
    except MacroClientError as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo("停止を送信しました")
