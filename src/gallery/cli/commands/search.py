"""Search command for checking results from the terminal."""

import click

from gallery.cli.base import CliCommand
from gallery.errors import EmptyQueryError
from gallery.kvstore import MemoryKeyValueStore
from gallery.search import SearchCache, SearchEngine


@click.command(name="search")
@click.argument("text")
@click.option("--page", default=1, type=int, show_default=True, help="Result page")
def search_command(text: str, page: int):
    """Find images whose embeddings are closest to TEXT."""
    cmd = SearchCommand(text, page)
    cmd.run()


class SearchCommand(CliCommand):
    """Command to run a text similarity search."""

    def __init__(self, text: str, page: int):
        super().__init__()
        self.text = text
        self.page = page

    def run(self):
        self.setup_db()
        try:
            engine = SearchEngine(
                session_factory=self.Session,
                provider=self.build_provider(),
                cache=SearchCache(MemoryKeyValueStore(), self.config.cache_ttl_seconds),
                rate_limiter=None,
                config=self.config,
            )
            try:
                response = engine.search_by_text(self.text, page=self.page)
            except EmptyQueryError as exc:
                raise click.ClickException(str(exc)) from exc
        finally:
            self.cleanup_db()

        if response.degraded:
            raise click.ClickException(response.advisory or "Search unavailable")
        if not response.results:
            click.echo("No matching images.")
            return
        for ref in response.results:
            click.echo(f"{ref.id:>8}  {ref.distance:.4f}  {ref.name or '(untitled)'}")
        info = response.page_info
        if info and info.has_next:
            click.echo(f"-- more results: --page {info.page + 1}")
