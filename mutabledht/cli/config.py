"""CLI commands: config show, config set."""

from __future__ import annotations

import json
from dataclasses import fields, replace

import click

from mutabledht.config import (
    _coerce,
    _field_type,
    _validate_value,
    config_as_dict,
    load_config,
    save_config,
)


@click.group("config")
def config_group() -> None:
    """Configuration management."""


@config_group.command("show")
def config_show() -> None:
    """Show current configuration as JSON."""
    click.echo(json.dumps(config_as_dict(load_config()), indent=2))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """Set a configuration value (section.key = value).

    Example: mutabledht config set records.fetch_timeout 5
    """
    if "." not in key:
        raise click.UsageError(
            "Key must be in 'section.key' format (e.g., records.fetch_timeout)"
        )
    section_name, field_name = key.split(".", 1)
    config = load_config()
    section = getattr(config, section_name, None)
    if section is None:
        raise click.UsageError(f"Unknown section: {section_name}")
    match = [f for f in fields(section) if f.name == field_name]
    if not match:
        raise click.UsageError(f"Unknown key: {key}")

    try:
        coerced = _coerce(value, _field_type(match[0]))
    except ValueError as exc:
        raise click.UsageError(f"Invalid value for {key}: {exc}") from None
    validated = _validate_value(field_name, coerced)
    if validated is None:
        raise click.UsageError(f"Invalid value for {key}: {value}")

    new_section = replace(section, **{field_name: validated})
    updated = replace(config, **{section_name: new_section})
    save_config(updated)
    click.echo(json.dumps({key: config_as_dict(updated)[section_name][field_name]}))
