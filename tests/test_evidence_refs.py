from __future__ import annotations

from types import SimpleNamespace

import pytest
import requests

from dispatchgate.config import DispatchSettings
from dispatchgate.errors import ConflictError
from dispatchgate.gates.evidence import EvidenceReference, EvidenceReferenceVerifier
from dispatchgate.pipeline import MutationPipeline
from tests.lifecycle_helpers import DOOR_WONT_LATCH_EVIDENCE, STANDARD_CHECKLIST


class FakeSession:
    def __init__(self, responses=None, error=None):
        self.responses = responses or {}
        self.error = error
        self.calls = []

    def head(self, url, timeout=None, allow_redirects=True):
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        status, etag = self.responses.get(url, (404, None))
        headers = {"ETag": etag} if etag else {}
        return SimpleNamespace(status_code=status, headers=headers)


def _strict(**overrides):
    return DispatchSettings(
        strict_evidence=True,
        object_store_endpoint="https://objects.example.com",
        **overrides,
    )


def test_scheme_allow_list_applies_without_strict_mode():
    verifier = EvidenceReferenceVerifier(DispatchSettings(), session=FakeSession())

    failures = verifier.inspect(
        [
            EvidenceReference("s3://bucket/photo.jpg"),
            EvidenceReference("https://bucket/photo.jpg"),
            EvidenceReference("s3://bucket"),
        ]
    )

    assert failures == [
        {"uri": "https://bucket/photo.jpg", "reason": "SCHEME_NOT_ALLOWED"},
        {"uri": "s3://bucket", "reason": "MALFORMED_URI"},
    ]


def test_verify_raises_with_invalid_refs():
    verifier = EvidenceReferenceVerifier(DispatchSettings(), session=FakeSession())

    with pytest.raises(ConflictError) as exc:
        verifier.verify([EvidenceReference("ftp://host/file")], gate="ticket.close")

    details = exc.value.details
    assert exc.value.code == "CLOSEOUT_REQUIREMENTS_INCOMPLETE"
    assert details["requirement_code"] == "INVALID_EVIDENCE_REFERENCE"
    assert details["invalid_evidence_refs"] == ["ftp://host/file"]
    assert details["gate"] == "ticket.close"


def test_strict_mode_heads_the_object_and_compares_etag():
    session = FakeSession({"https://objects.example.com/bucket/a.jpg": (200, 'W/"ABC123"')})
    verifier = EvidenceReferenceVerifier(_strict(evidence_head_timeout_seconds=2.5), session=session)

    assert verifier.inspect([EvidenceReference("s3://bucket/a.jpg", checksum="sha256:abc123")]) == []
    assert session.calls == [("https://objects.example.com/bucket/a.jpg", 2.5)]


@pytest.mark.parametrize(
    "responses, checksum, reason",
    [
        ({}, "abc", "OBJECT_NOT_FOUND"),
        ({"https://objects.example.com/bucket/a.jpg": (200, None)}, "abc", "ETAG_MISSING"),
        ({"https://objects.example.com/bucket/a.jpg": (200, '"other"')}, "abc", "CHECKSUM_MISMATCH"),
        ({"https://objects.example.com/bucket/a.jpg": (200, '"abc"')}, None, "CHECKSUM_MISSING"),
    ],
)
def test_strict_mode_failure_reasons(responses, checksum, reason):
    verifier = EvidenceReferenceVerifier(_strict(), session=FakeSession(responses))

    failures = verifier.inspect([EvidenceReference("s3://bucket/a.jpg", checksum=checksum)])

    assert failures == [{"uri": "s3://bucket/a.jpg", "reason": reason}]


def test_strict_mode_without_endpoint_cannot_resolve_s3():
    verifier = EvidenceReferenceVerifier(DispatchSettings(strict_evidence=True), session=FakeSession())

    failures = verifier.inspect([EvidenceReference("s3://bucket/a.jpg", checksum="abc")])

    assert failures[0]["reason"] == "OBJECT_STORE_UNCONFIGURED"


def test_head_errors_count_as_failures():
    session = FakeSession(error=requests.ConnectionError("connection refused"))
    verifier = EvidenceReferenceVerifier(_strict(), session=session)

    failures = verifier.inspect([EvidenceReference("s3://bucket/a.jpg", checksum="abc")])

    assert failures[0]["reason"] == "HEAD_REQUEST_FAILED"


def test_strict_recheck_catches_reference_that_disappeared():
    session = FakeSession({"https://objects.example.com/bucket/a.jpg": (200, '"abc"')})
    verifier = EvidenceReferenceVerifier(_strict(), session=session)
    reference = EvidenceReference("s3://bucket/a.jpg", checksum="abc")

    verifier.verify([reference], gate="tech.complete")
    session.responses.clear()

    with pytest.raises(ConflictError):
        verifier.verify([reference], gate="qa.verify")


@pytest.fixture
def object_store():
    return FakeSession()


@pytest.fixture
def pipeline(storage, settings, object_store):
    strict = settings.with_overrides(strict_evidence=True, object_store_endpoint="https://objects.example.com")
    return MutationPipeline(storage, strict, verifier=EvidenceReferenceVerifier(strict, session=object_store))


def _object_url(uri):
    return "https://objects.example.com/" + uri[len("s3://"):]


def test_pipeline_rechecks_references_at_verification(call, ticket_in_progress, add_evidence, object_store):
    ticket_id = ticket_in_progress()["id"]
    uris = [
        add_evidence(ticket_id, key)["uri"]
        for key in (*DOOR_WONT_LATCH_EVIDENCE, "signature_or_no_signature_reason")
    ]
    object_store.responses.update({_object_url(uri): (200, '"abc123"') for uri in uris})

    completed = call(
        "tech.complete",
        ticket_id=ticket_id,
        role="technician",
        actor_id="tech-7",
        payload={"checklist_status": STANDARD_CHECKLIST},
    )
    assert completed.ok, completed.body
    assert _object_url(uris[0]) in {url for url, _timeout in object_store.calls}

    del object_store.responses[_object_url(uris[0])]
    verified = call("qa.verify", ticket_id=ticket_id, role="qa", actor_id="qa-1", payload={"result": "PASS"})

    assert verified.status_code == 409
    assert verified.error_code == "CLOSEOUT_REQUIREMENTS_INCOMPLETE"
    error = verified.body["error"]
    assert error["requirement_code"] == "INVALID_EVIDENCE_REFERENCE"
    assert error["gate"] == "qa.verify"
    assert error["invalid_evidence_refs"] == [uris[0]]
    assert error["evidence_ref_failures"] == [{"uri": uris[0], "reason": "OBJECT_NOT_FOUND"}]
    current = call("ticket.get", ticket_id=ticket_id, key=None)
    assert current.body["state"] == "COMPLETED_PENDING_VERIFICATION"
