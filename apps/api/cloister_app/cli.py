from __future__ import annotations

import argparse
from dataclasses import dataclass, field
import json
from pathlib import Path
import sys
from typing import Any, Callable

from cloister_core.errors import CloisterError
from cloister_core.index import GroupStore

from cloister_app.completion import BackgroundCompletion, FileResultSink, ask
from cloister_app.logging_config import configure_logging
from cloister_app.retrieval.service import index_document, open_group_store, retrieve_best_chunk
from cloister_app.service.client import ServiceClient
from cloister_app.settings import DEFAULT_SETTINGS_FILE, Settings, load_settings, save_settings


@dataclass
class _Context:
    settings: Settings
    settings_path: Path
    _client: ServiceClient | None = field(default=None, repr=False)
    _store: GroupStore | None = field(default=None, repr=False)

    @property
    def client(self) -> ServiceClient:
        if self._client is None:
            self._client = ServiceClient.from_settings(self.settings)
        return self._client

    @property
    def store(self) -> GroupStore:
        if self._store is None:
            self._store = open_group_store(self.settings)
        return self._store


Handler = Callable[[argparse.Namespace, _Context], int]


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, default=str))


# -- service ------------------------------------------------------------


def _cmd_start(args: argparse.Namespace, ctx: _Context) -> int:
    model = None if args.no_model else ctx.settings.model_name
    state = ctx.client.bootstrapper.ensure_ready(model)
    print(f"Service ready ({state.value})")
    return 0


def _cmd_stop(args: argparse.Namespace, ctx: _Context) -> int:
    stopped = ctx.client.shutdown()
    print(f"Stopped {stopped} process(es)")
    return 0


def _cmd_health(args: argparse.Namespace, ctx: _Context) -> int:
    _print_json(ctx.client.health())
    return 0


def _cmd_hardware(args: argparse.Namespace, ctx: _Context) -> int:
    _print_json(ctx.client.hardware())
    return 0


# -- rag ----------------------------------------------------------------


def _cmd_add(args: argparse.Namespace, ctx: _Context) -> int:
    result = index_document(
        client=ctx.client,
        store=ctx.store,
        settings=ctx.settings,
        path=args.path,
        group=args.group,
        part_size=args.part_size,
    )
    print(
        f"Indexed {result.chunks_indexed} chunk(s) of {args.path} as {result.file_id} "
        f"into group '{result.group}'"
    )
    return 0


def _cmd_query(args: argparse.Namespace, ctx: _Context) -> int:
    chunk = retrieve_best_chunk(
        client=ctx.client,
        store=ctx.store,
        settings=ctx.settings,
        query=args.text,
        group=args.group,
    )
    if chunk is None:
        print("No match: the group has no embeddings yet.")
        return 0
    print(f"[{chunk.file_id} part {chunk.part} score {chunk.score:.4f}]")
    print(chunk.text)
    return 0


def _cmd_ask(args: argparse.Namespace, ctx: _Context) -> int:
    group = None if args.no_rag else (args.group or ctx.settings.default_group)

    def run():
        return ask(
            client=ctx.client,
            store=ctx.store,
            settings=ctx.settings,
            question=args.text,
            group=group,
        )

    if args.background:
        output = Path(args.output)
        background = BackgroundCompletion()
        background.dispatch(run, FileResultSink(output))
        background.shutdown(wait=False)
        print(f"Dispatched; the answer will be written to {output}")
        return 0

    result = run()
    print(result.answer)
    if result.source is not None and args.show_source:
        print(
            f"\n[source: {result.source.file_id} part {result.source.part} "
            f"score {result.source.score:.4f}]"
        )
    return 0


def _cmd_groups_list(args: argparse.Namespace, ctx: _Context) -> int:
    for name in ctx.store.list_groups():
        print(name)
    return 0


def _cmd_groups_delete(args: argparse.Namespace, ctx: _Context) -> int:
    ctx.store.delete_group(args.name)
    print(f"Deleted group '{args.name}'")
    return 0


# -- passthroughs -------------------------------------------------------


def _cmd_models_list(args: argparse.Namespace, ctx: _Context) -> int:
    for info in ctx.client.list_models().data:
        print(f"{info.id}\t{info.status or 'unknown'}")
    return 0


def _cmd_models_pull(args: argparse.Namespace, ctx: _Context) -> int:
    print(ctx.client.pull_model(args.name).message or "Pull requested")
    return 0


def _cmd_models_start(args: argparse.Namespace, ctx: _Context) -> int:
    if not ctx.client.start_model(args.name):
        print(f"Model '{args.name}' did not start", file=sys.stderr)
        return 1
    print(f"Started {args.name}")
    return 0


def _cmd_models_stop(args: argparse.Namespace, ctx: _Context) -> int:
    if not ctx.client.stop_model(args.name):
        print(f"Model '{args.name}' could not be stopped", file=sys.stderr)
        return 1
    print(f"Stopped {args.name}")
    return 0


def _cmd_files_list(args: argparse.Namespace, ctx: _Context) -> int:
    for item in ctx.client.list_files().data:
        print(f"{item.id}\t{item.filename or ''}")
    return 0


def _cmd_files_delete(args: argparse.Namespace, ctx: _Context) -> int:
    result = ctx.client.delete_file(args.file_id)
    print(f"Deleted {result.id or args.file_id}" if result.deleted else "Not deleted")
    return 0 if result.deleted else 1


def _cmd_threads_list(args: argparse.Namespace, ctx: _Context) -> int:
    for thread in ctx.client.list_threads().data:
        title = thread.title or thread.metadata.get("title") or ""
        print(f"{thread.id}\t{title}")
    return 0


def _cmd_threads_create(args: argparse.Namespace, ctx: _Context) -> int:
    print(ctx.client.create_thread(args.title).id)
    return 0


def _cmd_threads_delete(args: argparse.Namespace, ctx: _Context) -> int:
    result = ctx.client.delete_thread(args.thread_id)
    return 0 if result.deleted else 1


# -- config -------------------------------------------------------------


def _cmd_config_show(args: argparse.Namespace, ctx: _Context) -> int:
    _print_json(ctx.settings.model_dump(mode="json"))
    return 0


def _cmd_config_set(args: argparse.Namespace, ctx: _Context) -> int:
    if args.key not in Settings.model_fields:
        raise ValueError(f"Unknown setting: {args.key}")
    data = ctx.settings.persisted_values()
    data[args.key] = _parse_setting_value(args.value)
    updated = Settings(**data)
    path = save_settings(updated, ctx.settings_path)
    print(f"Saved {args.key} to {path}")
    return 0


def _parse_setting_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloister",
        description="Ask questions about private documents with a local model",
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_SETTINGS_FILE),
        help="Settings file to read and write",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    start = commands.add_parser("start", help="Install/start the service, engine and model")
    start.add_argument("--no-model", action="store_true", help="Skip loading the model")
    start.set_defaults(handler=_cmd_start)
    commands.add_parser("stop", help="Stop the backing service").set_defaults(handler=_cmd_stop)
    commands.add_parser("health", help="Service health").set_defaults(handler=_cmd_health)
    commands.add_parser("hardware", help="Service hardware info").set_defaults(
        handler=_cmd_hardware
    )

    add = commands.add_parser("add", help="Index a document into a RAG group")
    add.add_argument("path")
    add.add_argument("--group")
    add.add_argument("--part-size", type=int)
    add.set_defaults(handler=_cmd_add)

    query = commands.add_parser("query", help="Return the best matching chunk")
    query.add_argument("text")
    query.add_argument("--group")
    query.set_defaults(handler=_cmd_query)

    ask_cmd = commands.add_parser("ask", help="Answer a question with the local model")
    ask_cmd.add_argument("text")
    ask_cmd.add_argument("--group")
    ask_cmd.add_argument("--no-rag", action="store_true", help="Do not retrieve context")
    ask_cmd.add_argument("--show-source", action="store_true")
    ask_cmd.add_argument("--background", action="store_true", help="Return immediately")
    ask_cmd.add_argument("--output", default="cloister-answer.json")
    ask_cmd.set_defaults(handler=_cmd_ask)

    groups = commands.add_parser("groups", help="Manage RAG groups")
    groups_sub = groups.add_subparsers(dest="groups_command", required=True)
    groups_sub.add_parser("list").set_defaults(handler=_cmd_groups_list)
    groups_delete = groups_sub.add_parser("delete")
    groups_delete.add_argument("name")
    groups_delete.set_defaults(handler=_cmd_groups_delete)

    models = commands.add_parser("models", help="Manage models")
    models_sub = models.add_subparsers(dest="models_command", required=True)
    models_sub.add_parser("list").set_defaults(handler=_cmd_models_list)
    for name, handler in (
        ("pull", _cmd_models_pull),
        ("start", _cmd_models_start),
        ("stop", _cmd_models_stop),
    ):
        sub = models_sub.add_parser(name)
        sub.add_argument("name")
        sub.set_defaults(handler=handler)

    files = commands.add_parser("files", help="Manage uploaded files")
    files_sub = files.add_subparsers(dest="files_command", required=True)
    files_sub.add_parser("list").set_defaults(handler=_cmd_files_list)
    files_delete = files_sub.add_parser("delete")
    files_delete.add_argument("file_id")
    files_delete.set_defaults(handler=_cmd_files_delete)

    threads = commands.add_parser("threads", help="Manage threads")
    threads_sub = threads.add_subparsers(dest="threads_command", required=True)
    threads_sub.add_parser("list").set_defaults(handler=_cmd_threads_list)
    threads_create = threads_sub.add_parser("create")
    threads_create.add_argument("--title")
    threads_create.set_defaults(handler=_cmd_threads_create)
    threads_delete = threads_sub.add_parser("delete")
    threads_delete.add_argument("thread_id")
    threads_delete.set_defaults(handler=_cmd_threads_delete)

    config = commands.add_parser("config", help="Show or change settings")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show").set_defaults(handler=_cmd_config_show)
    config_set = config_sub.add_parser("set")
    config_set.add_argument("key")
    config_set.add_argument("value")
    config_set.set_defaults(handler=_cmd_config_set)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings_path = Path(args.config).expanduser()
    try:
        settings = load_settings(settings_path)
    except ValueError as exc:
        print(f"Invalid settings file {settings_path}: {exc}", file=sys.stderr)
        return 2

    configure_logging(settings.logging or args.verbose)
    ctx = _Context(settings=settings, settings_path=settings_path)
    handler: Handler = args.handler
    try:
        return handler(args, ctx)
    except CloisterError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except (ValueError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
