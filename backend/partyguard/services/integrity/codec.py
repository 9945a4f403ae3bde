"""Canonical encoding and detached RSA signatures for the domain whitelist.

The canonical form is compact JSON of exactly four fields in a fixed
order::

    {"version":...,"lastUpdated":...,"domains":[...],"patterns":[...]}

List order is significant and nothing is sorted or deduplicated, so the
bytes are identical to what the browser-side ``JSON.stringify`` of the same
object yields. Signatures are RSA PKCS#1 v1.5 over SHA-256, hex encoded.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from partyguard.errors import InvalidPayloadError, KeyFormatError, SignatureFormatError

MIN_KEY_BITS = 2048
SIGNED_FIELDS = ('version', 'lastUpdated', 'domains', 'patterns')

KeyInput = Union[str, bytes]

_PEM_BLOCK = re.compile(r'-----BEGIN ([A-Z ]+)-----(.*?)-----END \1-----', re.DOTALL)


@dataclass(frozen=True)
class SignedArtifact:
    version: str
    last_updated: str
    domains: Tuple[str, ...]
    patterns: Tuple[str, ...] = ()
    signature: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> 'SignedArtifact':
        _check_payload(doc)
        extra = {k: v for k, v in doc.items() if k not in SIGNED_FIELDS and k != 'signature'}
        return cls(
            version=doc['version'],
            last_updated=doc['lastUpdated'],
            domains=tuple(doc['domains']),
            patterns=tuple(doc.get('patterns') or ()),
            signature=doc.get('signature'),
            extra=extra,
        )

    def payload(self) -> dict:
        return {
            'version': self.version,
            'lastUpdated': self.last_updated,
            'domains': list(self.domains),
            'patterns': list(self.patterns),
        }

    def canonical_bytes(self) -> bytes:
        return canonicalize(self.payload())


def _check_payload(payload: Any) -> None:
    if not payload or not isinstance(payload, Mapping):
        raise InvalidPayloadError('payload is empty')
    version = payload.get('version')
    if version is None or isinstance(version, bool) or not isinstance(version, (str, int)):
        raise InvalidPayloadError('payload has no version')
    if not isinstance(payload.get('lastUpdated'), str):
        raise InvalidPayloadError('payload has no lastUpdated timestamp')
    domains = payload.get('domains')
    if not isinstance(domains, list) or not all(isinstance(d, str) for d in domains):
        raise InvalidPayloadError('domains must be a list of strings')
    patterns = payload.get('patterns')
    if patterns is not None and (
        not isinstance(patterns, list) or not all(isinstance(p, str) for p in patterns)
    ):
        raise InvalidPayloadError('patterns must be a list of strings')


def canonicalize(payload: Union[Mapping[str, Any], SignedArtifact]) -> bytes:
    """Serialize the signed subset of an artifact to deterministic bytes."""
    if isinstance(payload, SignedArtifact):
        payload = payload.payload()
    _check_payload(payload)
    ordered = {
        'version': payload['version'],
        'lastUpdated': payload['lastUpdated'],
        'domains': list(payload['domains']),
        'patterns': list(payload.get('patterns') or []),
    }
    return json.dumps(ordered, separators=(',', ':'), ensure_ascii=False).encode('utf-8')


def _normalize_pem(data: KeyInput) -> bytes:
    """Re-wrap a PEM block whose line breaks were stripped (meta tag form)."""
    text = data.decode('ascii', errors='replace') if isinstance(data, bytes) else data
    match = _PEM_BLOCK.search(text)
    if not match:
        raise KeyFormatError('no PEM block found in key material')
    label = match.group(1)
    body = re.sub(r'\s+', '', match.group(2))
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return ('-----BEGIN %s-----\n%s\n-----END %s-----\n' % (label, '\n'.join(lines), label)).encode('ascii')


def _check_size(key) -> None:
    if key.key_size < MIN_KEY_BITS:
        raise KeyFormatError(f'RSA key too small: {key.key_size} bits (minimum {MIN_KEY_BITS})')


def load_private_key(key: Union[KeyInput, rsa.RSAPrivateKey]) -> rsa.RSAPrivateKey:
    if isinstance(key, rsa.RSAPrivateKey):
        _check_size(key)
        return key
    try:
        loaded = serialization.load_pem_private_key(_normalize_pem(key), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyFormatError(f'unparseable private key: {exc}') from exc
    if not isinstance(loaded, rsa.RSAPrivateKey):
        raise KeyFormatError('private key is not an RSA key')
    _check_size(loaded)
    return loaded


def load_public_key(key: Union[KeyInput, rsa.RSAPublicKey]) -> rsa.RSAPublicKey:
    if isinstance(key, rsa.RSAPublicKey):
        _check_size(key)
        return key
    try:
        loaded = serialization.load_pem_public_key(_normalize_pem(key))
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise KeyFormatError(f'unparseable public key: {exc}') from exc
    if not isinstance(loaded, rsa.RSAPublicKey):
        raise KeyFormatError('public key is not an RSA key')
    _check_size(loaded)
    return loaded


def sign(canonical_bytes: bytes, private_key) -> str:
    """Return the hex RSA-SHA256 signature of ``canonical_bytes``."""
    if not canonical_bytes:
        raise InvalidPayloadError('nothing to sign')
    key = load_private_key(private_key)
    return key.sign(canonical_bytes, padding.PKCS1v15(), hashes.SHA256()).hex()


def verify(canonical_bytes: bytes, signature: str, public_key) -> bool:
    """True iff ``signature`` was made over exactly these bytes by the key holder.

    Mismatches return False; only malformed keys or signatures raise.
    """
    if not canonical_bytes:
        raise InvalidPayloadError('nothing to verify')
    key = load_public_key(public_key)
    if not isinstance(signature, str):
        raise SignatureFormatError('signature must be a hex string')
    try:
        raw = bytes.fromhex(signature)
    except ValueError as exc:
        raise SignatureFormatError('signature is not valid hex') from exc
    try:
        key.verify(raw, canonical_bytes, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


def public_key_pem(key) -> str:
    if isinstance(key, rsa.RSAPrivateKey):
        key = key.public_key()
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode('ascii')


def private_key_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode('ascii')


def meta_tag_key(pem: str) -> str:
    """Collapse a PEM public key to the single line embedded in page config."""
    return pem.replace('\r', '').replace('\n', '')


def generate_key_pair(bits: int = MIN_KEY_BITS) -> Tuple[str, str]:
    """Generate an RSA key pair, returned as (private_pem, public_pem)."""
    if bits < MIN_KEY_BITS:
        raise KeyFormatError(f'refusing to generate a {bits}-bit key')
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    return private_key_pem(key), public_key_pem(key)
