"""Embedding generation commands."""

import click

from gallery.cli.base import CliCommand
from gallery.generation import EmbeddingPipeline, GenerationOutcome, enqueue_missing_embeddings, missing_embedding_ids


@click.command(name="build-embeddings")
@click.option("--inline/--queue", default=False, help="Generate embeddings in this process instead of queueing jobs")
def build_embeddings_command(inline: bool):
    """Generate embeddings for every image that has a file but no embedding.

    By default one generate_embedding job is queued per image and the worker
    does the work. With --inline the provider is called from this process,
    one image at a time."""
    cmd = BuildEmbeddingsCommand(inline)
    cmd.run()


@click.command(name="generate-embedding")
@click.argument("record_id", type=int)
def generate_embedding_command(record_id: int):
    """Generate (or regenerate) the embedding for a single image now."""
    cmd = GenerateEmbeddingCommand(record_id)
    cmd.run()


class BuildEmbeddingsCommand(CliCommand):
    """Command to backfill missing embeddings."""

    def __init__(self, inline: bool):
        super().__init__()
        self.inline = inline

    def run(self):
        self.setup_db()
        try:
            if self.inline:
                self._build_inline()
            else:
                queued = enqueue_missing_embeddings(self.db, self.build_queue())
                click.echo(f"Queued embedding generation for {queued} image(s).")
        finally:
            self.cleanup_db()

    def _build_inline(self):
        record_ids = missing_embedding_ids(self.db)
        if not record_ids:
            click.echo("No images need embeddings.")
            return

        pipeline = EmbeddingPipeline(self.Session, self.build_blob_store(), self.build_provider(), self.config)
        counts = {outcome: 0 for outcome in GenerationOutcome}
        with click.progressbar(record_ids, label="Embedding images") as bar:
            for record_id in bar:
                counts[pipeline.run(record_id)] += 1

        click.echo(
            f"Stored {counts[GenerationOutcome.STORED]}, "
            f"failed {counts[GenerationOutcome.FAILED]}, "
            f"skipped {counts[GenerationOutcome.NO_FILE] + counts[GenerationOutcome.RECORD_MISSING]}."
        )


class GenerateEmbeddingCommand(CliCommand):
    """Command to embed one image synchronously."""

    def __init__(self, record_id: int):
        super().__init__()
        self.record_id = record_id

    def run(self):
        self.setup_db()
        try:
            pipeline = EmbeddingPipeline(self.Session, self.build_blob_store(), self.build_provider(), self.config)
            outcome = pipeline.run(self.record_id)
        finally:
            self.cleanup_db()
        click.echo(f"Image {self.record_id}: {outcome.value}")
        if outcome is GenerationOutcome.FAILED:
            raise click.ClickException("Embedding generation failed; see log for details")
