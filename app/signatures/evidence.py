from __future__ import annotations

import copy
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import update

from app.core.errors import EvidenceIntegrityError
from app.core.extensions import db
from app.core.models import EvidenceBundleRecord, IntegrityStatus

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"

DEFAULT_LEGAL_FRAMEWORK: dict[str, Any] = {
    "law": "Ley N° 4017/2010 - República del Paraguay",
    "standards": ["ISO 14533", "ISO 27001", "UNCITRAL"],
    "level": "Firma Electrónica Avanzada (referencial eIDAS)",
}


@dataclass(frozen=True)
class EvidenceBundle:
    bundle: dict[str, Any]
    bundle_hash: str

    @property
    def document_hash(self) -> str:
        return self.bundle["document_hash"]


def hash_content(content: str | bytes) -> str:
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()


def canonical_json(bundle: dict[str, Any]) -> bytes:
    return json.dumps(bundle, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_bundle_hash(bundle: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(bundle)).hexdigest()


def build_evidence_bundle(
    document_content: str | bytes,
    identity_verification_id: int | None,
    consent_record_id: int | None,
    signature_method: str,
    ip: str | None,
    user_agent: str | None,
    timestamp: datetime | str,
    legal_framework: dict[str, Any] | None = None,
) -> EvidenceBundle:
    """Assemble the proof-of-signing record and its SHA-256 anchor.

    Same inputs always give the same ``bundle_hash``: the bundle is serialized
    with sorted keys and no insignificant whitespace before hashing.
    """
    if isinstance(timestamp, datetime):
        timestamp = timestamp.isoformat()
    bundle = {
        "schema_version": SCHEMA_VERSION,
        "timestamp": timestamp,
        "document_hash": hash_content(document_content),
        "identity_verification": {
            "verified": identity_verification_id is not None,
            "verification_id": identity_verification_id,
        },
        "consent_record": {"record_id": consent_record_id},
        "signature": {"method": signature_method, "ip": ip, "user_agent": user_agent},
        "legal_framework": copy.deepcopy(legal_framework or DEFAULT_LEGAL_FRAMEWORK),
    }
    return EvidenceBundle(bundle=bundle, bundle_hash=compute_bundle_hash(bundle))


def verify_evidence_bundle(record: EvidenceBundleRecord, document_content: str | bytes | None = None) -> None:
    problems = []
    if compute_bundle_hash(record.bundle) != record.bundle_hash:
        problems.append("bundle_hash")
    if record.bundle.get("document_hash") != record.document_hash:
        problems.append("document_hash")
    elif document_content is not None and hash_content(document_content) != record.document_hash:
        problems.append("document_content")
    if not problems:
        return

    db.session.execute(
        update(EvidenceBundleRecord)
        .where(EvidenceBundleRecord.id == record.id)
        .values(integrity_status=IntegrityStatus.TAMPERED)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    logger.error(
        "Evidence bundle %s (link %s) failed integrity check: %s",
        record.id,
        record.signature_link_id,
        ", ".join(problems),
    )
    raise EvidenceIntegrityError(f"La evidencia de firma no es integra ({', '.join(problems)})")


def verify_link_evidence(link_id: int) -> EvidenceBundleRecord:
    from app.signatures.links import link_document_content, staff_link_by_id

    link = staff_link_by_id(link_id)
    record = EvidenceBundleRecord.query.filter_by(signature_link_id=link.id).first()
    if record is None:
        raise EvidenceIntegrityError("El enlace no tiene evidencia de firma registrada")
    verify_evidence_bundle(record, link_document_content(link.id))
    return record
