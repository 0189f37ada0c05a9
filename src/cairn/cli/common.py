"""cairn.cli.common — Shared CLI plumbing."""

from __future__ import annotations

import signal
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import click

from cairn.config import CairnConfig, load_config
from cairn.errors import CairnError
from cairn.provider.base import Provider
from cairn.provider.registry import get_provider
from cairn.state.store import StateStore


@dataclass
class CliState:
    """Global flags; config is loaded lazily so --help never reads it."""
    state_dir: str | None = None
    provider_name: str | None = None
    _config: CairnConfig | None = None

    @property
    def config(self) -> CairnConfig:
        if self._config is None:
            try:
                cfg = load_config()
            except CairnError as e:
                fail(e)
            if self.state_dir:
                cfg.state_dir = self.state_dir
            if self.provider_name:
                cfg.provider = self.provider_name
            self._config = cfg
        return self._config

    def store(self) -> StateStore:
        return StateStore(self.config.state_path())

    def provider(self) -> Provider:
        cfg = self.config
        options = {"path": cfg.provider_path()} if cfg.provider == "local" else {}
        try:
            return get_provider(cfg.provider, **options)
        except CairnError as e:
            fail(e)


param_options = [
    click.option("--name", default=None,
                 help="Graph name (default: template file name)"),
    click.option("--param", "param_args", multiple=True,
                 help="Parameter override (key=value)"),
    click.option("--param-file", "param_files", multiple=True,
                 type=click.Path(exists=True, dir_okay=False),
                 help="YAML parameter file (multiple allowed)"),
    click.option("--region", default=None,
                 help="Value of AWS::Region"),
]


def with_param_options(fn):
    for option in reversed(param_options):
        fn = option(fn)
    return fn


def fail(error: Exception, code: int = 1):
    click.echo(f"Error: {error}", err=True)
    sys.exit(code)


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """First Ctrl-C cancels cooperatively, in-flight operations finish."""
    cancel = threading.Event()

    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        click.echo("Cancelling: waiting for in-flight operations...", err=True)
        cancel.set()

    try:
        previous = signal.signal(signal.SIGINT, handler)
    except ValueError:
        # Not the main thread
        yield cancel
        return
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)
