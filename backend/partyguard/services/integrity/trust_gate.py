import enum
import json
import logging
import re
import threading
from typing import Any, List, Mapping, NamedTuple, Optional, Pattern, Tuple, Union

import requests

from partyguard.errors import IntegrityError, TrustGateTimeout
from . import codec


class TrustState(enum.Enum):
    UNVERIFIED = 'unverified'
    TRUSTED = 'trusted'
    DISTRUSTED = 'distrusted'


class DomainDecision(NamedTuple):
    allowed: bool
    reason: str  # matched | not_listed | distrusted | unverified


class ConfigTrustGate:
    """Holds the active domain whitelist, but only once its signature checks out.

    Until a load succeeds every domain check is denied. A distrusted gate is
    reported as such and never as an empty whitelist.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._settled = threading.Event()
        self._state = TrustState.UNVERIFIED
        self._artifact: Optional[codec.SignedArtifact] = None
        self._domains: Tuple[str, ...] = ()
        self._patterns: Tuple[Pattern, ...] = ()

    @property
    def state(self) -> TrustState:
        return self._state

    @property
    def artifact(self) -> Optional[codec.SignedArtifact]:
        """The last artifact that verified, if any."""
        return self._artifact if self._state is TrustState.TRUSTED else None

    def load_and_verify(self, artifact: Union[bytes, str, Mapping[str, Any]], public_key) -> TrustState:
        try:
            doc = self._parse(artifact)
            signature = doc.get('signature')
            if not signature:
                return self._distrust('artifact is not signed')
            # Rebuilt from the parsed fields, not the raw bytes received
            parsed = codec.SignedArtifact.from_document(doc)
            if not codec.verify(parsed.canonical_bytes(), signature, public_key):
                return self._distrust('signature mismatch', version=parsed.version)
        except (IntegrityError, ValueError, TypeError) as exc:
            return self._distrust(f'{type(exc).__name__}: {exc}')
        return self._trust(parsed)

    def load_file(self, path: str, public_key) -> TrustState:
        try:
            with open(path, 'rb') as f:
                raw = f.read()
        except OSError as exc:
            return self._distrust(f'cannot read {path}: {exc}')
        return self.load_and_verify(raw, public_key)

    def fetch_and_verify(self, url: str, public_key, timeout: float = 5.0) -> TrustState:
        try:
            response = requests.get(url, timeout=timeout, headers={'Accept': 'application/json',
                                                                   'Cache-Control': 'no-cache'})
            response.raise_for_status()
        except requests.RequestException as exc:
            return self._distrust(f'cannot fetch {url}: {exc}')
        return self.load_and_verify(response.content, public_key)

    def mark_unavailable(self, reason: str) -> TrustState:
        """Settle as distrusted when there is nothing to verify at all."""
        return self._distrust(reason)

    def wait(self, timeout: float) -> TrustState:
        if not self._settled.wait(timeout):
            raise TrustGateTimeout(f'whitelist not verified within {timeout}s')
        return self._state

    def check(self, domain: str) -> DomainDecision:
        with self._lock:
            state, domains, patterns = self._state, self._domains, self._patterns
        if state is TrustState.DISTRUSTED:
            return DomainDecision(False, 'distrusted')
        if state is TrustState.UNVERIFIED:
            return DomainDecision(False, 'unverified')
        host = (domain or '').strip().lower().rstrip('.')
        if not host:
            return DomainDecision(False, 'not_listed')
        for allowed in domains:
            if host == allowed or host.endswith('.' + allowed):
                return DomainDecision(True, 'matched')
        for pattern in patterns:
            if pattern.search(host):
                return DomainDecision(True, 'matched')
        return DomainDecision(False, 'not_listed')

    def is_whitelisted(self, domain: str) -> bool:
        return self.check(domain).allowed

    def summary(self) -> dict:
        with self._lock:
            state, artifact = self._state, self._artifact
            domains, patterns = len(self._domains), len(self._patterns)
        return {
            'state': state.value,
            'version': artifact.version if artifact else None,
            'last_updated': artifact.last_updated if artifact else None,
            'domains': domains,
            'patterns': patterns,
        }

    @staticmethod
    def _parse(artifact) -> dict:
        if isinstance(artifact, Mapping):
            return dict(artifact)
        if isinstance(artifact, bytes):
            artifact = artifact.decode('utf-8')
        if not isinstance(artifact, str):
            raise TypeError(f'unsupported artifact type {type(artifact).__name__}')
        doc = json.loads(artifact)
        if not isinstance(doc, dict):
            raise ValueError('artifact is not a JSON object')
        return doc

    def _compile(self, patterns) -> List[Pattern]:
        compiled = []
        for source in patterns:
            try:
                compiled.append(re.compile(source))
            except re.error as exc:
                self.logger.warning(f"[whitelist] skipping invalid pattern {source!r}: {exc}")
        return compiled

    def _trust(self, artifact: codec.SignedArtifact) -> TrustState:
        domains = tuple(d.strip().lower().rstrip('.') for d in artifact.domains if d.strip())
        patterns = tuple(self._compile(artifact.patterns))
        with self._lock:
            self._artifact = artifact
            self._domains = domains
            self._patterns = patterns
            self._state = TrustState.TRUSTED
        self._settled.set()
        self.logger.info(
            f"[whitelist] trusted version={artifact.version} domains={len(domains)} patterns={len(patterns)}"
        )
        return TrustState.TRUSTED

    def _distrust(self, reason: str, version=None) -> TrustState:
        with self._lock:
            self._artifact = None
            self._domains = ()
            self._patterns = ()
            self._state = TrustState.DISTRUSTED
        self._settled.set()
        self.logger.error(f"[whitelist] DISTRUSTED version={version} reason={reason}; denying all domains")
        return TrustState.DISTRUSTED
