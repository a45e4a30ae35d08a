"""mutabledht CLI: Click command groups and sub-commands.

- ``dht`` commands: ``get-mutable``, ``put-mutable``
- ``keys``: ``keys generate``, ``keys show``
- ``config``: ``config show``, ``config set``

Every command prints JSON on stdout; logs go through structlog.
"""

from __future__ import annotations

import click
import structlog

from mutabledht import __version__

# Configure structlog once at CLI entry
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(file=click.get_text_stream("stderr")),
)


@click.group()
@click.version_option(version=__version__, prog_name="mutabledht")
def cli() -> None:
    """mutabledht: signed mutable records over a Kademlia DHT."""


# Register sub-command modules
from mutabledht.cli.config import config_group  # noqa: E402
from mutabledht.cli.dht import get_mutable_cmd, put_mutable_cmd  # noqa: E402
from mutabledht.cli.keys import keys_group  # noqa: E402

cli.add_command(get_mutable_cmd)
cli.add_command(put_mutable_cmd)
cli.add_command(keys_group)
cli.add_command(config_group)
