"""Gallery CLI entry point with lazy command registration."""

from __future__ import annotations

import logging

import click

_COMMANDS_REGISTERED = False


def _register_commands_once() -> None:
    global _COMMANDS_REGISTERED
    if _COMMANDS_REGISTERED:
        return

    from .commands import embeddings, search, worker

    cli.add_command(embeddings.build_embeddings_command, name="build-embeddings")
    cli.add_command(embeddings.generate_embedding_command, name="generate-embedding")
    cli.add_command(worker.run_worker_command, name="run-worker")
    cli.add_command(search.search_command, name="search")

    _COMMANDS_REGISTERED = True


class _LazyCLIGroup(click.Group):
    def list_commands(self, ctx):
        _register_commands_once()
        return super().list_commands(ctx)

    def get_command(self, ctx, cmd_name):
        _register_commands_once()
        return super().get_command(ctx, cmd_name)


@click.group(cls=_LazyCLIGroup)
@click.option("--log-level", default="INFO", show_default=True, help="Python logging level")
def cli(log_level: str):
    """Gallery CLI for embedding maintenance, workers, and search."""
    logging.basicConfig(
        level=getattr(logging, str(log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


if __name__ == "__main__":
    cli()
