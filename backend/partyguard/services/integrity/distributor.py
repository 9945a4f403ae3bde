"""Build step: sign ``allowed-domains.json`` before deployment.

Setup::

    flask whitelist-keygen            # or: openssl genrsa -out private.pem 2048
    sign-whitelist allowed-domains.json

The private key never leaves the build machine. Only the public key is
embedded in the deployed page/service config.
"""

import json
import os
from datetime import datetime, timezone
from typing import Optional

import click

from partyguard.errors import ConfigMissingError, IntegrityError, KeyFormatError
from . import codec

DEFAULT_CONFIG_PATH = 'allowed-domains.json'
DEFAULT_PRIVATE_KEY_PATH = os.path.join('build-scripts', 'private.pem')
DEFAULT_PUBLIC_KEY_PATH = os.path.join('build-scripts', 'public.pem')


def iso_timestamp(now: Optional[datetime] = None) -> str:
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return now.strftime('%Y-%m-%dT%H:%M:%S.') + f'{now.microsecond // 1000:03d}Z'


def _read_text(path: str, what: str) -> str:
    if not os.path.isfile(path):
        raise ConfigMissingError(f'{what} not found: {path}', path=path)
    with open(path, 'r', encoding='utf-8') as f:
        return f.read()


def load_document(config_path: str) -> dict:
    raw = _read_text(config_path, 'Whitelist config')
    try:
        doc = json.loads(raw)
    except ValueError as exc:
        raise ConfigMissingError(f'Whitelist config is not valid JSON: {config_path} ({exc})', path=config_path)
    if not isinstance(doc, dict):
        raise ConfigMissingError(f'Whitelist config must be a JSON object: {config_path}', path=config_path)
    domains = doc.get('domains')
    if not isinstance(domains, list) or not domains:
        raise ConfigMissingError(f'Whitelist config has no domains: {config_path}', path=config_path)
    return doc


def sign_whitelist(config_path: str, private_key_path: str, public_key_path: Optional[str] = None,
                   now: Optional[datetime] = None) -> codec.SignedArtifact:
    """Re-sign the whitelist document in place and return the signed artifact.

    Nothing is written unless signing (and, when the public key is present,
    verification against it) succeeds.
    """
    doc = load_document(config_path)
    private_pem = _read_text(private_key_path, 'Private key')
    private_key = codec.load_private_key(private_pem)

    doc.pop('signature', None)
    doc['lastUpdated'] = iso_timestamp(now)
    doc.setdefault('patterns', [])
    artifact = codec.SignedArtifact.from_document(doc)
    canonical = artifact.canonical_bytes()
    signature = codec.sign(canonical, private_key)

    if public_key_path and os.path.isfile(public_key_path):
        public_pem = _read_text(public_key_path, 'Public key')
        if not codec.verify(canonical, signature, public_pem):
            raise ConfigMissingError(
                f'Public key {public_key_path} does not belong to private key {private_key_path}; '
                f'signature would not verify at runtime',
                path=public_key_path,
            )

    doc['signature'] = signature
    with open(config_path, 'w', encoding='utf-8') as f:
        json.dump(doc, f, indent=2, ensure_ascii=False)
        f.write('\n')
    return codec.SignedArtifact.from_document(doc)


@click.command('sign-whitelist')
@click.argument('config_path', default=DEFAULT_CONFIG_PATH, required=False)
@click.option('--private-key', 'private_key_path', envvar='PRIVATE_KEY_PATH',
              default=DEFAULT_PRIVATE_KEY_PATH, show_default=True, help='RSA private key (PEM).')
@click.option('--public-key', 'public_key_path', envvar='PUBLIC_KEY_PATH',
              default=DEFAULT_PUBLIC_KEY_PATH, show_default=True, help='RSA public key (PEM).')
def sign_whitelist_command(config_path, private_key_path, public_key_path):
    """Sign the domain whitelist with the build-time private key."""
    click.echo('Signing domain whitelist...')
    try:
        artifact = sign_whitelist(config_path, private_key_path, public_key_path)
    except ConfigMissingError as exc:
        click.echo(f'Error: {exc}', err=True)
        if exc.path == private_key_path:
            click.echo('Generate a key pair with: flask whitelist-keygen', err=True)
        raise SystemExit(1)
    except IntegrityError as exc:
        click.echo(f'Error signing whitelist: {exc}', err=True)
        raise SystemExit(1)
    except OSError as exc:
        click.echo(f'Error writing {config_path}: {exc}', err=True)
        raise SystemExit(1)

    click.echo('Domain whitelist signed successfully!')
    click.echo(f'   File: {config_path}')
    click.echo(f'   Domains: {len(artifact.domains)}')
    click.echo(f'   Patterns: {len(artifact.patterns)}')
    click.echo(f'   Signature: {artifact.signature[:32]}...')
    click.echo(f'   Last updated: {artifact.last_updated}')

    if os.path.isfile(public_key_path):
        with open(public_key_path, 'r', encoding='utf-8') as f:
            public_pem = f.read()
        click.echo('\nNext steps:')
        click.echo('1. Embed the public key in the deployed page config:')
        click.echo(f'\n<meta name="domain-whitelist-public-key" content="{codec.meta_tag_key(public_pem.strip())}">\n')
        click.echo(f'2. Deploy the signed {os.path.basename(config_path)}')
        click.echo('3. Check GET /api/integrity/whitelist reports "trusted"')


@click.command('whitelist-keygen')
@click.option('--private-key', 'private_key_path', envvar='PRIVATE_KEY_PATH',
              default=DEFAULT_PRIVATE_KEY_PATH, show_default=True)
@click.option('--public-key', 'public_key_path', envvar='PUBLIC_KEY_PATH',
              default=DEFAULT_PUBLIC_KEY_PATH, show_default=True)
@click.option('--bits', default=codec.MIN_KEY_BITS, show_default=True, type=int)
def keygen_command(private_key_path, public_key_path, bits):
    """Generate the whitelist signing key pair."""
    for path in (private_key_path, public_key_path):
        if os.path.exists(path):
            click.echo(f'Error: refusing to overwrite {path}', err=True)
            raise SystemExit(1)
    try:
        private_pem, public_pem = codec.generate_key_pair(bits)
    except KeyFormatError as exc:
        click.echo(f'Error: {exc}', err=True)
        raise SystemExit(1)
    for path, pem, mode in ((private_key_path, private_pem, 0o600), (public_key_path, public_pem, 0o644)):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(pem)
        os.chmod(path, mode)
    click.echo(f'Wrote {private_key_path} (keep out of version control) and {public_key_path}')


if __name__ == '__main__':
    sign_whitelist_command()
