"""Queue worker command."""

import click

from gallery.cli.base import CliCommand
from gallery.dependencies import build_task_handlers
from gallery.settings import settings
from gallery.worker import run_loop, start_worker_pool


@click.command(name="run-worker")
@click.option("--once", is_flag=True, default=False, help="Drain due jobs and exit")
@click.option("--threads", default=None, type=int, help="Worker threads (defaults to WORKER_THREADS)")
def run_worker_command(once: bool, threads):
    """Run the background job worker (embedding generation, captioning)."""
    cmd = RunWorkerCommand(once, threads or settings.worker_threads)
    cmd.run()


class RunWorkerCommand(CliCommand):
    """Command to process queued jobs."""

    def __init__(self, once: bool, threads: int):
        super().__init__()
        self.once = once
        self.threads = threads

    def run(self):
        self.setup_db()
        try:
            handlers = build_task_handlers(
                self.Session,
                self.build_blob_store(),
                self.build_provider(),
                self.config,
                self.build_queue(),
            )
            if self.once:
                processed = run_loop(handlers=handlers, session_factory=self.Session, once=True)
                click.echo(f"Processed {processed} job(s).")
                return

            pool = start_worker_pool(self.threads, handlers=handlers, session_factory=self.Session)
            click.echo(f"Worker running with {self.threads} thread(s); Ctrl+C to stop.")
            try:
                for thread in pool.threads:
                    while thread.is_alive():
                        thread.join(timeout=1.0)
            except KeyboardInterrupt:
                click.echo("Stopping worker...")
            finally:
                pool.stop()
        finally:
            self.cleanup_db()
