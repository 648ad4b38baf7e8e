"""
Resolve a target emergency contact under a main user.

A main user <-> emergency contact link is stored twice:
  top: emergencyContacts/{autoId}                  (mainUserUid field)
  sub: users/{mainUserUid}/emergency_contact/{id}  (usually keyed by EC uid)

Both copies have their own write history and carry identity fields under
several historical names. Matching normalizes every known variant, then
regroups the hits by emergencyContactUid so that all mirror docs for the
same contact travel together and two different contacts are never merged.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from errors import InvalidTarget
from identifiers import normalize_email, normalize_phone
from store import DocumentSnapshot

logger = logging.getLogger(__name__)

TOP_LEVEL_COLLECTION = "emergencyContacts"
LINK_SUBCOLLECTION = "emergency_contact"
ACTIVE_STATUS = "ACTIVE"
UNKNOWN_KEY_PREFIX = "__unknown__:"

# Field names seen on link documents over time, in lookup order.
EMAIL_FIELDS: Sequence[str] = ("email", "emergencyContactEmail", "contactEmail")
PHONE_FIELDS: Sequence[str] = ("phone", "contactPhone", "emergencyContactPhone")


def link_subcollection_path(main_user_uid: str) -> str:
    return f"users/{main_user_uid}/{LINK_SUBCOLLECTION}"


def _extract(data: Dict[str, Any], names: Sequence[str], normalize: Callable[[Any], str]) -> List[str]:
    values = []
    for name in names:
        value = normalize(data.get(name))
        if value and value not in values:
            values.append(value)
    return values


def extract_emails(data: Dict[str, Any]) -> List[str]:
    return _extract(data, EMAIL_FIELDS, normalize_email)


def extract_phones(data: Dict[str, Any]) -> List[str]:
    return _extract(data, PHONE_FIELDS, normalize_phone)


def contact_uid_of(data: Dict[str, Any]) -> str:
    value = data.get("emergencyContactUid")
    return value.strip() if isinstance(value, str) else ""


def is_unknown_key(key: str) -> bool:
    return key.startswith(UNKNOWN_KEY_PREFIX)


@dataclass
class LinkDoc:
    snapshot: DocumentSnapshot
    scope: str  # "top" or "sub"

    @property
    def path(self) -> str:
        return self.snapshot.path

    @property
    def data(self) -> Dict[str, Any]:
        return self.snapshot.data or {}

    @property
    def identity_key(self) -> str:
        return contact_uid_of(self.data) or f"{UNKNOWN_KEY_PREFIX}{self.path}"

    def matches(self, target_email: str, target_phone: str) -> bool:
        if target_email and target_email in extract_emails(self.data):
            return True
        if target_phone and target_phone in extract_phones(self.data):
            return True
        return False


class MatchOutcome(str, Enum):
    NOT_FOUND = "not_found"
    UNIQUE = "unique"
    AMBIGUOUS = "ambiguous"


@dataclass
class MatchResult:
    outcome: MatchOutcome
    docs: List[LinkDoc] = field(default_factory=list)
    keys: List[str] = field(default_factory=list)

    @property
    def key(self) -> Optional[str]:
        return self.keys[0] if self.outcome == MatchOutcome.UNIQUE else None

    @property
    def contact_uid(self) -> Optional[str]:
        key = self.key
        if not key or is_unknown_key(key):
            return None
        return key

    def first_value(self, extractor: Callable[[Dict[str, Any]], List[str]]) -> Optional[str]:
        for doc in self.docs:
            values = extractor(doc.data)
            if values:
                return values[0]
        return None


def group_by_contact(docs: Sequence[LinkDoc]) -> Dict[str, List[LinkDoc]]:
    groups: Dict[str, List[LinkDoc]] = {}
    for doc in docs:
        groups.setdefault(doc.identity_key, []).append(doc)
    return groups


def classify(groups: Dict[str, List[LinkDoc]]) -> MatchResult:
    if not groups:
        return MatchResult(MatchOutcome.NOT_FOUND)
    if len(groups) > 1:
        return MatchResult(MatchOutcome.AMBIGUOUS, keys=sorted(groups))
    (key, docs), = groups.items()
    return MatchResult(MatchOutcome.UNIQUE, docs=list(docs), keys=[key])


class ContactMatcher:
    def __init__(self, store):
        self.store = store

    async def load_links(self, main_user_uid: str, where: Optional[Dict[str, Any]] = None) -> List[LinkDoc]:
        """Every link doc for the main user across both mirrors."""
        top_where = {"mainUserUid": main_user_uid, **(where or {})}
        top, sub = await asyncio.gather(
            self.store.find(TOP_LEVEL_COLLECTION, where=top_where),
            self.store.find(link_subcollection_path(main_user_uid), where=where),
        )
        return [LinkDoc(s, "top") for s in top] + [LinkDoc(s, "sub") for s in sub]

    async def active_links(self, main_user_uid: str) -> List[LinkDoc]:
        return await self.load_links(main_user_uid, where={"status": ACTIVE_STATUS})

    async def match(self, main_user_uid: str, target_email: str = "", target_phone: str = "",
                    contact_uid: Optional[str] = None) -> MatchResult:
        target_email = normalize_email(target_email)
        target_phone = normalize_phone(target_phone)
        contact_uid = (contact_uid or "").strip() or None
        if not target_email and not target_phone and not contact_uid:
            raise InvalidTarget()

        links = await self.load_links(main_user_uid)
        if target_email or target_phone:
            hits = [doc for doc in links if doc.matches(target_email, target_phone)]
        else:
            hits = [doc for doc in links if contact_uid_of(doc.data) == contact_uid]

        groups = group_by_contact(hits)
        if contact_uid:
            groups = {k: v for k, v in groups.items() if k == contact_uid}

        result = classify(groups)
        logger.info(
            f"Contact match for {main_user_uid}: {result.outcome.value} "
            f"({len(hits)} docs, {len(groups)} groups, {len(links)} scanned)"
        )
        return result
