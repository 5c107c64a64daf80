from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

import requests

from dispatchgate.config import DispatchSettings
from dispatchgate.errors import closeout_incomplete


logger = logging.getLogger(__name__)

INVALID_EVIDENCE_REFERENCE = "INVALID_EVIDENCE_REFERENCE"


@dataclass(frozen=True)
class EvidenceReference:
    uri: str
    checksum: Optional[str] = None


def _normalize_tag(value: Optional[str]) -> str:
    text = str(value or "").strip()
    if text.startswith("W/"):
        text = text[2:]
    text = text.strip('"').strip().lower()
    if ":" in text:
        # "sha256:abcd" style checksums compare on the digest alone.
        text = text.split(":", 1)[1]
    return text


class EvidenceReferenceVerifier:
    """
    Checks evidence URIs at every gate that depends on them.

    The scheme allow-list always applies. Strict mode additionally issues a
    HEAD request per URI and compares the reported ETag with the stored
    checksum, so a reference that verified at completion can still fail at
    verification or close.
    """

    def __init__(self, settings: DispatchSettings, session: Optional[Any] = None):
        self._settings = settings
        self._session = session or requests.Session()

    @property
    def strict(self) -> bool:
        return self._settings.strict_evidence

    def _resolve_http_url(self, uri: str) -> Optional[str]:
        parsed = urlparse(uri)
        scheme = parsed.scheme.lower()
        if scheme in {"http", "https"}:
            return uri
        endpoint = self._settings.object_store_endpoint
        if not endpoint:
            return None
        return f"{endpoint.rstrip('/')}/{parsed.netloc}/{parsed.path.lstrip('/')}"

    def _scheme_failure(self, uri: str) -> Optional[str]:
        parsed = urlparse(uri)
        if parsed.scheme.lower() not in self._settings.evidence_allowed_schemes:
            return "SCHEME_NOT_ALLOWED"
        if not parsed.netloc or not parsed.path.strip("/"):
            return "MALFORMED_URI"
        return None

    def _existence_failure(self, reference: EvidenceReference) -> Optional[str]:
        url = self._resolve_http_url(reference.uri)
        if url is None:
            return "OBJECT_STORE_UNCONFIGURED"
        if not str(reference.checksum or "").strip():
            return "CHECKSUM_MISSING"
        try:
            response = self._session.head(
                url,
                timeout=self._settings.evidence_head_timeout_seconds,
                allow_redirects=True,
            )
        except requests.RequestException as exc:
            logger.warning("evidence HEAD failed for %s: %s", reference.uri, exc)
            return "HEAD_REQUEST_FAILED"
        if not 200 <= int(response.status_code) < 300:
            return "OBJECT_NOT_FOUND"
        etag = response.headers.get("ETag") or response.headers.get("etag")
        if not etag:
            return "ETAG_MISSING"
        if _normalize_tag(etag) != _normalize_tag(reference.checksum):
            return "CHECKSUM_MISMATCH"
        return None

    def inspect(self, references: Iterable[EvidenceReference]) -> List[Dict[str, str]]:
        failures: List[Dict[str, str]] = []
        seen = set()
        for reference in references:
            key = (reference.uri, reference.checksum)
            if key in seen:
                continue
            seen.add(key)
            reason = self._scheme_failure(reference.uri)
            if reason is None and self.strict:
                reason = self._existence_failure(reference)
            if reason is not None:
                failures.append({"uri": reference.uri, "reason": reason})
        return sorted(failures, key=lambda item: (item["uri"], item["reason"]))

    def verify(self, references: Iterable[EvidenceReference], *, gate: str) -> None:
        failures = self.inspect(references)
        if not failures:
            return
        invalid = sorted({failure["uri"] for failure in failures})
        logger.info("evidence references rejected at %s gate: %s", gate, invalid)
        raise closeout_incomplete(
            "One or more evidence references failed verification",
            requirement_code=INVALID_EVIDENCE_REFERENCE,
            gate=gate,
            invalid_evidence_refs=invalid,
            evidence_ref_failures=failures,
        )
