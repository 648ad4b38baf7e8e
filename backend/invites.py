import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from errors import (
    AlreadyUsed,
    EmailMismatch,
    Expired,
    NotFound,
    PreconditionFailed,
    TokenMismatch,
    ValidationFailed,
)
from identifiers import is_e164_phone, looks_like_email, normalize_email, normalize_phone
from matching import (
    ACTIVE_STATUS,
    EMAIL_FIELDS,
    LINK_SUBCOLLECTION,
    TOP_LEVEL_COLLECTION,
    contact_uid_of,
    extract_emails,
    link_subcollection_path,
)

logger = logging.getLogger(__name__)

INVITES_COLLECTION = "invites"
MAIL_COLLECTION = "mail"

INVITE_PENDING = "pending"
INVITE_ACCEPTED = "accepted"
INVITE_REVOKED = "revoked"
LINK_PENDING = "PENDING"

# Older invite documents used these names for the recipient and inviter.
INVITE_EMAIL_FIELDS = ("emergencyContactEmail", "emergencyEmail", "caregiverEmail")
INVITE_OWNER_FIELDS = ("mainUserUid", "mainUserId", "userId")

# Contact summaries embedded on a main user profile under `emergencyContacts`.
EMBEDDED_CONTACT_SLOTS = ("contact1", "contact2")


class InviteCreateRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    email: Optional[str] = None
    name: Optional[str] = None
    relation: Optional[str] = None


class InviteAcceptRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    token: Optional[str] = None
    inviteId: Optional[str] = None
    invite: Optional[str] = None


class ProfileSyncRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class Caller:
    uid: str
    email: str = ""
    phone: str = ""
    name: str = ""


@dataclass
class InviteIssue:
    invite_id: str
    token: str
    accept_url: str
    expires_at: datetime
    reused: bool = False


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def first_field(data: Dict[str, Any], names) -> str:
    for name in names:
        value = data.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def top_level_link_id(main_user_uid: str, email: str) -> str:
    return f"{main_user_uid}_{email}".replace("/", "_")


def refresh_embedded_contacts(embedded: Any, match_emails, name: str, email: str,
                              phone: str) -> Optional[Dict[str, Any]]:
    """Updated copy of a profile's `emergencyContacts` map, or None when no slot matches."""
    if not isinstance(embedded, dict):
        return None
    refreshed = dict(embedded)
    changed = False
    for slot in EMBEDDED_CONTACT_SLOTS:
        slot_email = normalize_email(embedded.get(f"{slot}_email"))
        if not slot_email or slot_email not in match_emails:
            continue
        if name:
            first, _, rest = name.partition(" ")
            refreshed[f"{slot}_firstName"] = first
            refreshed[f"{slot}_lastName"] = rest.strip()
        if email:
            refreshed[f"{slot}_email"] = email
        if phone:
            refreshed[f"{slot}_phone"] = phone
        changed = True
    return refreshed if changed else None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InviteResolver:
    """
    Issues emergency-contact invites and turns an accepted invite into the
    two link mirrors the contact matcher searches.
    """

    def __init__(self, store, app_origin: str = "http://localhost:3000",
                 invite_ttl: timedelta = timedelta(days=7),
                 clock: Callable[[], datetime] = utc_now,
                 token_factory: Callable[[], str] = lambda: secrets.token_hex(32)):
        self.store = store
        self.app_origin = app_origin.rstrip("/")
        self.invite_ttl = invite_ttl
        self.clock = clock
        self.token_factory = token_factory

    def accept_url(self, invite_id: str, token: str) -> str:
        return f"{self.app_origin}/emergency_contact/accept?invite={invite_id}&token={token}"

    async def _top_level_links_for_email(self, main_user_uid: str, email: str) -> List:
        docs = await self.store.find(TOP_LEVEL_COLLECTION, where={"mainUserUid": main_user_uid})
        return [d for d in docs if email in extract_emails(d.data)]

    async def _free_top_level_path(self, main_user_uid: str, email: str, contact_uid: str = "") -> str:
        """Deterministic top-level link path, unless another contact already owns it."""
        link_id = top_level_link_id(main_user_uid, email)
        existing = await self.store.get(f"{TOP_LEVEL_COLLECTION}/{link_id}")
        owner = contact_uid_of(existing.data or {})
        if owner and owner != contact_uid:
            link_id = top_level_link_id(main_user_uid, f"{email}_{contact_uid or self.store.new_id()}")
        return f"{TOP_LEVEL_COLLECTION}/{link_id}"

    async def create_or_refresh_invite(self, main_user_uid: str, recipient_email: Any,
                                       name: Optional[str] = None, relation: Optional[str] = None) -> InviteIssue:
        email = normalize_email(recipient_email)
        if not email:
            raise ValidationFailed("Email required")
        if not looks_like_email(email):
            raise ValidationFailed("Invalid email format")

        pending = await self.store.find(
            INVITES_COLLECTION,
            where={"mainUserUid": main_user_uid, "emergencyContactEmail": email, "status": INVITE_PENDING},
            order_by=("createdAt", -1),
            limit=1,
        )
        now = self.clock()
        token = self.token_factory()
        expires_at = now + self.invite_ttl
        batch = self.store.batch()

        if pending:
            invite_id = pending[0].id
            # Rotating the hash invalidates any earlier link for this invite.
            batch.update(
                f"{INVITES_COLLECTION}/{invite_id}",
                {
                    "tokenHash": hash_token(token),
                    "expiresAt": expires_at,
                    "updatedAt": now,
                    "name": name or pending[0].get("name"),
                    "relation": relation or pending[0].get("relation"),
                },
                expect={"status": INVITE_PENDING},
            )
        else:
            invite_id = self.store.new_id()
            batch.set(f"{INVITES_COLLECTION}/{invite_id}", {
                "mainUserUid": main_user_uid,
                "role": "emergency_contact",
                "emergencyContactEmail": email,
                "tokenHash": hash_token(token),
                "status": INVITE_PENDING,
                "createdAt": now,
                "updatedAt": now,
                "expiresAt": expires_at,
                "acceptedAt": None,
                "acceptedBy": None,
                "name": name or None,
                "relation": relation or None,
            })

        if not await self._top_level_links_for_email(main_user_uid, email):
            batch.set(await self._free_top_level_path(main_user_uid, email), {
                "mainUserUid": main_user_uid,
                "emergencyContactEmail": email,
                "name": name or "",
                "relation": relation or "",
                "status": LINK_PENDING,
                "inviteId": invite_id,
                "createdAt": now,
                "updatedAt": now,
            }, merge=True)

        url = self.accept_url(invite_id, token)
        greeting = f"Hello {name}," if name else "Hello,"
        batch.set(f"{MAIL_COLLECTION}/{self.store.new_id()}", {
            "to": [email],
            "createdAt": now,
            "message": {
                "subject": "Your LifeSignal emergency contact invite",
                "html": (
                    f"<p>{greeting}</p>"
                    "<p>You've been invited to be an <strong>emergency contact</strong>.</p>"
                    f"<p><a href=\"{url}\">Accept invitation</a></p>"
                    f"<p>If the button doesn't work, copy this URL:<br>{url}</p>"
                    f"<p>This link expires in {self.invite_ttl.days} days.</p>"
                ),
            },
        })
        await batch.commit()
        logger.info(f"Invite {invite_id} for main user {main_user_uid} {'rotated' if pending else 'created'}")
        return InviteIssue(invite_id, token, url, expires_at, reused=bool(pending))

    async def _load_invite(self, invite_id: str, token: str):
        if invite_id and "/" not in invite_id:
            snapshot = await self.store.get(f"{INVITES_COLLECTION}/{invite_id}")
            if snapshot.exists:
                return snapshot
        if token:
            found = await self.store.find(INVITES_COLLECTION, where={"tokenHash": hash_token(token)}, limit=1)
            if found:
                return found[0]
        raise NotFound("Invite not found")

    async def accept_invite(self, caller: Caller, invite_id: Optional[str] = None,
                            token: Optional[str] = None) -> Dict[str, Any]:
        invite_id = (invite_id or "").strip()
        token = (token or "").strip()
        if not invite_id and not token:
            raise ValidationFailed("token or inviteId required")

        invite = await self._load_invite(invite_id, token)
        data = invite.data
        if data.get("status") != INVITE_PENDING:
            raise AlreadyUsed()
        # Expiry is only reported to the invite's own recipient.
        if token and not hmac.compare_digest(str(data.get("tokenHash") or ""), hash_token(token)):
            raise TokenMismatch()

        invited_email = normalize_email(first_field(data, INVITE_EMAIL_FIELDS))
        if not invited_email:
            raise ValidationFailed("Invite missing recipient email")
        if invited_email != normalize_email(caller.email):
            logger.warning(f"Invite {invite.id} accept attempted by a different identity ({caller.uid})")
            raise EmailMismatch()

        expires_at = data.get("expiresAt")
        now = self.clock()
        if isinstance(expires_at, datetime) and expires_at < now:
            raise Expired()

        main_user_uid = first_field(data, INVITE_OWNER_FIELDS)
        if not main_user_uid:
            raise ValidationFailed("Invite missing main user id")
        if main_user_uid == caller.uid:
            raise ValidationFailed("You cannot accept your own invite")

        sub_path = f"{link_subcollection_path(main_user_uid)}/{caller.uid}"
        sub_existing = await self.store.get(sub_path)
        main_profile = await self.store.get(f"users/{main_user_uid}")
        main_user_name = (
            f"{main_profile.get('firstName') or ''} {main_profile.get('lastName') or ''}".strip()
            or main_profile.get("displayName") or ""
        )
        # Never repair a top-level doc that already belongs to another contact.
        top_docs = [
            d for d in await self._top_level_links_for_email(main_user_uid, invited_email)
            if contact_uid_of(d.data) in ("", caller.uid)
        ]

        identity = {"emergencyContactEmail": invited_email, "email": invited_email}
        phone = normalize_phone(caller.phone)
        if phone:
            identity["phone"] = phone
        if caller.name:
            identity["name"] = caller.name

        batch = self.store.batch()
        sub_payload = {
            "uid": caller.uid,
            "emergencyContactUid": caller.uid,
            "mainUserUid": main_user_uid,
            "mainUserName": main_user_name,
            **identity,
            "status": ACTIVE_STATUS,
            "inviteId": invite.id,
            "updatedAt": now,
        }
        if not sub_existing.exists:
            sub_payload["createdAt"] = now
        batch.set(sub_path, sub_payload, merge=True)

        top_payload = {
            "mainUserUid": main_user_uid,
            "emergencyContactUid": caller.uid,
            "status": ACTIVE_STATUS,
            "inviteId": invite.id,
            "acceptedAt": now,
            "updatedAt": now,
        }
        if top_docs:
            for doc in top_docs:
                repair = dict(top_payload)
                if phone and not doc.get("phone"):
                    repair["phone"] = phone
                batch.set(doc.path, repair, merge=True)
        else:
            top_path = await self._free_top_level_path(main_user_uid, invited_email, caller.uid)
            batch.set(top_path, {**top_payload, **identity, "createdAt": now}, merge=True)

        batch.update(
            f"{INVITES_COLLECTION}/{invite.id}",
            {"status": INVITE_ACCEPTED, "acceptedBy": caller.uid, "acceptedAt": now, "updatedAt": now},
            expect={"status": INVITE_PENDING},
        )
        try:
            await batch.commit()
        except PreconditionFailed:
            raise AlreadyUsed()

        logger.info(f"Invite {invite.id} accepted; linked {caller.uid} to {main_user_uid} ({max(len(top_docs), 1)} top-level docs)")
        return {"ok": True, "mainUserUid": main_user_uid}

    async def linked_main_users(self, contact_uid: str) -> List[str]:
        top = await self.store.find(TOP_LEVEL_COLLECTION, where={"emergencyContactUid": contact_uid})
        sub = await self.store.find_group(LINK_SUBCOLLECTION, where={"emergencyContactUid": contact_uid})
        uids: List[str] = []
        for doc in top:
            uid = first_field(doc.data, ("mainUserUid", "mainUserId"))
            if uid and uid not in uids:
                uids.append(uid)
        for doc in sub:
            uid = doc.parent_path.split("/")[-1]
            if uid and uid not in uids:
                uids.append(uid)
        return uids

    async def sync_contact_profile(self, contact_uid: str, request: ProfileSyncRequest) -> Dict[str, Any]:
        """
        Push an emergency contact's own identity changes onto every mirror doc
        for them, and onto the contact slots embedded in each linked main
        user's profile (`emergencyContacts.contact1_*` / `contact2_*`).

        A slot is refreshed when its email equals the contact's old email
        (read from the link doc) or the new one.
        """
        updates: Dict[str, Any] = {}
        name = (request.name or "").strip()
        if name:
            updates["name"] = name
        new_email = ""
        if request.email and request.email.strip():
            if not looks_like_email(request.email):
                raise ValidationFailed("Invalid email format")
            new_email = normalize_email(request.email)
            updates["email"] = new_email
        if request.phone and request.phone.strip():
            if not is_e164_phone(request.phone):
                raise ValidationFailed("Phone must be in E.164 format, e.g. +15551234567")
            updates["phone"] = normalize_phone(request.phone)
        empty = {"ok": True, "updatedLinks": 0, "updatedTopLevel": 0, "embeddedUpdated": 0}
        if not updates:
            return empty

        sub = await self.store.find_group(LINK_SUBCOLLECTION, where={"emergencyContactUid": contact_uid})
        top = await self.store.find(TOP_LEVEL_COLLECTION, where={"emergencyContactUid": contact_uid})
        if not sub and not top:
            return empty

        now = self.clock()
        batch = self.store.batch()
        for doc in sub + top:
            doc_updates = dict(updates)
            if new_email:
                # Legacy email fields follow the new address.
                for legacy in EMAIL_FIELDS:
                    if doc.get(legacy):
                        doc_updates[legacy] = new_email
            batch.set(doc.path, {**doc_updates, "updatedAt": now}, merge=True)

        old_emails: Dict[str, str] = {}
        for doc in sub:
            emails = extract_emails(doc.data)
            old_emails.setdefault(doc.parent_path, emails[0] if emails else "")

        embedded_updated = 0
        for main_user_path, old_email in old_emails.items():
            batch.set(f"{main_user_path}/notifications/{self.store.new_id()}", {
                "type": "contact_updated",
                "title": "Emergency contact updated",
                "body": f"{name or 'Your contact'} updated their info.",
                "data": {"emergencyContactUid": contact_uid, **updates},
                "createdAt": now,
                "read": False,
            })
            main_user = await self.store.get(main_user_path)
            embedded = refresh_embedded_contacts(
                main_user.get("emergencyContacts"), {old_email, new_email} - {""}, name, new_email,
                updates.get("phone", ""),
            )
            if embedded is not None:
                batch.set(main_user_path, {"emergencyContacts": embedded, "updatedAt": now}, merge=True)
                embedded_updated += 1

        await batch.commit()
        logger.info(f"Synced profile for {contact_uid}: {len(sub)} links, {len(top)} top-level, {embedded_updated} embedded")
        return {"ok": True, "updatedLinks": len(sub), "updatedTopLevel": len(top), "embeddedUpdated": embedded_updated}
