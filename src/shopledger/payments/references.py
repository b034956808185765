"""Payment reference minting and parsing.

A reference embeds what it pays for, ``ORDER_<order_id>_<token>`` or
``SUB_<account_id>_<token>``, so a confirmation can be routed even when the
processor drops the metadata.
"""

from dataclasses import dataclass
from uuid import uuid4

from shopledger.db.models import SubjectType

_PREFIXES = {
    SubjectType.ORDER: "ORDER",
    SubjectType.SUBSCRIPTION: "SUB",
}


@dataclass(frozen=True)
class ParsedReference:
    subject_type: SubjectType
    subject_id: str
    token: str


def mint_reference(subject_type: SubjectType, subject_id: str) -> str:
    """Mint a new, globally unique reference for one payment attempt."""
    return f"{_PREFIXES[subject_type]}_{subject_id}_{uuid4().hex[:16]}"


def parse_reference(reference: str) -> ParsedReference | None:
    """Recover subject type and id from a reference, or None if it is foreign."""
    prefix, sep, rest = reference.partition("_")
    if not sep:
        return None

    subject_id, sep, token = rest.rpartition("_")
    if not sep or not subject_id or not token:
        return None

    for subject_type, known in _PREFIXES.items():
        if prefix == known:
            return ParsedReference(subject_type=subject_type, subject_id=subject_id, token=token)
    return None
