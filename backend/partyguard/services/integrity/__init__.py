"""Signed domain whitelist: canonical encoding, build-time signing and
runtime verification.
"""

from .codec import SignedArtifact, canonicalize, sign, verify
from .trust_gate import ConfigTrustGate, DomainDecision, TrustState
