"""
manage.py — CLI admin commands for Itinerizer.

Usage:
    python manage.py scan-itineraries            # report corrupt / invalid records
    python manage.py scan-itineraries --json
    python manage.py hash-password               # bcrypt hash for AUTH_PASSWORD_HASH
"""

import json
import logging

import click

from auth import hash_password
from config import Settings
from database import init_schema, make_engine, make_session_factory
from storage import ItineraryStore


@click.group()
@click.option('--verbose', is_flag=True, help='Log at INFO level')
def cli(verbose: bool):
    """Itinerizer admin commands."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.ERROR,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )


@cli.command('scan-itineraries')
@click.option('--database-url', default=None, help='Overrides DATABASE_URL')
@click.option('--json', 'as_json', is_flag=True, help='Print the excluded records as JSON')
def scan_itineraries(database_url: str | None, as_json: bool):
    """Validate every stored itinerary. Exits 1 if any record was excluded."""
    url    = database_url or Settings.from_env().database_url
    engine = make_engine(url)
    init_schema(engine)
    try:
        result = ItineraryStore(make_session_factory(engine)).scan()
    finally:
        engine.dispose()

    if as_json:
        click.echo(json.dumps({
            'valid':    len(result.itineraries),
            'excluded': [d.to_dict() for d in result.excluded],
        }, indent=2))
    else:
        click.echo(f'✓ {len(result.itineraries)} valid itinerary record(s)')
        for d in result.excluded:
            fields = ', '.join(v.field for v in d.violations)
            click.echo(f'✗ {d.record_id} [{d.kind}] {d.detail}' + (f' ({fields})' if fields else ''),
                       err=True)

    if result.excluded:
        raise SystemExit(1)


@cli.command('hash-password')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True,
              help='Shared login password (hidden)')
def hash_password_cmd(password: str):
    """Print a bcrypt hash to use as AUTH_PASSWORD_HASH."""
    click.echo(hash_password(password))


if __name__ == '__main__':
    cli()
