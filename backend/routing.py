import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from errors import AmbiguousTarget, InvalidTarget, NotAuthorized, NotFound, ValidationFailed
from identifiers import normalize_email, normalize_phone
from matching import (
    ACTIVE_STATUS,
    ContactMatcher,
    LinkDoc,
    MatchOutcome,
    contact_uid_of,
    extract_emails,
    extract_phones,
    link_subcollection_path,
)
from notifications import NotificationDispatcher, PushResult

logger = logging.getLogger(__name__)

MESSAGE_TTL = timedelta(hours=24)
AUDIO_DATA_URL_RE = re.compile(r"^data:audio/", re.IGNORECASE)

AUDIENCE_BROADCAST = "broadcast"
AUDIENCE_DIRECT = "direct"


# ==================== MODELS ====================

class Assessment(BaseModel):
    model_config = ConfigDict(extra="ignore")
    explanation: Optional[str] = None
    anomalyDetected: bool = False


class TargetContact(BaseModel):
    model_config = ConfigDict(extra="ignore")
    email: Optional[Any] = None
    phone: Optional[Any] = None


class VoiceMessageSendRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    transcribedSpeech: Optional[str] = None
    assessment: Optional[Assessment] = None
    audioDataUrl: Optional[str] = None
    targetContact: Optional[TargetContact] = None
    sendToUid: Optional[str] = None


class ContactReplyRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    mainUserUid: Optional[str] = None
    transcript: Optional[str] = None
    audioDataUrl: Optional[str] = None


class VoiceMessagePayload(BaseModel):
    transcript: str
    explanation: str
    anomalyDetected: bool
    createdAt: datetime
    expiresAt: datetime
    audioDataUrl: Optional[str] = None
    audience: str
    targetEmergencyContactUid: Optional[str] = None
    targetEmergencyContactEmail: Optional[str] = None
    targetEmergencyContactPhone: Optional[str] = None


@dataclass
class ValidatedSend:
    transcript: str
    explanation: str
    anomaly_detected: bool
    audio_data_url: Optional[str]
    target_email: str
    target_phone: str
    target_uid: str

    @property
    def is_direct(self) -> bool:
        return bool(self.target_email or self.target_phone or self.target_uid)


# ==================== HELPERS ====================

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def display_name(profile: Optional[Dict[str, Any]], fallback: str) -> str:
    profile = profile or {}
    name = f"{profile.get('firstName') or ''} {profile.get('lastName') or ''}".strip()
    return name or (profile.get("displayName") or "").strip() or fallback


def clean_audio_reference(value: Optional[str]) -> Optional[str]:
    raw = (value or "").strip()
    if not raw:
        return None
    if not AUDIO_DATA_URL_RE.match(raw):
        raise ValidationFailed("audioDataUrl must be a base64-encoded data URL (data:audio/...)")
    return raw


def validate_send(request: VoiceMessageSendRequest) -> ValidatedSend:
    transcript = (request.transcribedSpeech or "").strip()
    if not transcript:
        raise ValidationFailed("transcribedSpeech is required")
    explanation = ((request.assessment.explanation if request.assessment else None) or "").strip()
    if not explanation:
        raise ValidationFailed("assessment.explanation is required")
    audio = clean_audio_reference(request.audioDataUrl)

    target_email = target_phone = ""
    target_uid = (request.sendToUid or "").strip()
    if request.targetContact is not None:
        target_email = normalize_email(request.targetContact.email)
        target_phone = normalize_phone(request.targetContact.phone)
        if not target_email and not target_phone and not target_uid:
            raise InvalidTarget()

    return ValidatedSend(
        transcript=transcript,
        explanation=explanation,
        anomaly_detected=bool(request.assessment.anomalyDetected),
        audio_data_url=audio,
        target_email=target_email,
        target_phone=target_phone,
        target_uid=target_uid,
    )


def mirror_summary(docs: List[LinkDoc]) -> List[Dict[str, str]]:
    return [{"scope": d.scope, "path": d.path} for d in docs]


# ==================== ROUTER ====================

class MessageRouter:
    """
    Fans a voice message out to link mirrors.

    broadcast: main user's latest slot + every ACTIVE mirror doc, push to all.
    direct:    only the matched contact's mirror docs, push to that contact.
               The shared latest slot is never written for direct messages.
    """

    def __init__(self, store, matcher: ContactMatcher, dispatcher: NotificationDispatcher,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.matcher = matcher
        self.dispatcher = dispatcher
        self.clock = clock

    def build_payload(self, send: ValidatedSend, audience: str, now: datetime,
                      target_uid: Optional[str] = None, target_email: Optional[str] = None,
                      target_phone: Optional[str] = None) -> Dict[str, Any]:
        payload = VoiceMessagePayload(
            transcript=send.transcript,
            explanation=send.explanation,
            anomalyDetected=send.anomaly_detected,
            createdAt=now,
            expiresAt=now + MESSAGE_TTL,
            audioDataUrl=send.audio_data_url,
            audience=audience,
            targetEmergencyContactUid=target_uid,
            targetEmergencyContactEmail=target_email,
            targetEmergencyContactPhone=target_phone,
        )
        return payload.model_dump()

    def _write_last_message(self, batch, docs: List[LinkDoc], payload: Dict[str, Any], now: datetime):
        for doc in docs:
            batch.set(doc.path, {"lastVoiceMessage": payload, "updatedAt": now}, merge=True)

    async def send(self, main_user_uid: str, profile: Optional[Dict[str, Any]],
                   request: VoiceMessageSendRequest) -> Dict[str, Any]:
        send = validate_send(request)
        if send.is_direct:
            return await self._send_direct(main_user_uid, profile, send)
        return await self._send_broadcast(main_user_uid, profile, send)

    async def _send_direct(self, main_user_uid: str, profile, send: ValidatedSend) -> Dict[str, Any]:
        result = await self.matcher.match(
            main_user_uid, send.target_email, send.target_phone, contact_uid=send.target_uid or None
        )
        if result.outcome == MatchOutcome.NOT_FOUND:
            raise NotFound("Target emergency contact not found for this user")
        if result.outcome == MatchOutcome.AMBIGUOUS:
            logger.warning(f"Ambiguous direct target for {main_user_uid}: {len(result.keys)} candidates")
            raise AmbiguousTarget(result.keys)

        contact_uid = result.contact_uid
        now = self.clock()
        payload = self.build_payload(
            send,
            AUDIENCE_DIRECT,
            now,
            target_uid=contact_uid,
            target_email=send.target_email or result.first_value(extract_emails),
            target_phone=send.target_phone or result.first_value(extract_phones),
        )

        batch = self.store.batch()
        self._write_last_message(batch, result.docs, payload, now)
        await batch.commit()
        logger.info(f"Direct voice message from {main_user_uid} committed to {len(result.docs)} mirror docs")

        push: Optional[PushResult] = None
        if contact_uid:
            tokens = await self.dispatcher.collect_device_tokens(contact_uid)
            if tokens:
                push = await self.dispatcher.dispatch(
                    tokens,
                    "New voice message",
                    f"{display_name(profile, 'your contact')} sent you a private voice update.",
                    {
                        "type": "voice_message_direct",
                        "mainUserUid": main_user_uid,
                        "targetEmergencyContactUid": contact_uid,
                    },
                )
        return self._response(AUDIENCE_DIRECT, result.docs, push)

    async def _send_broadcast(self, main_user_uid: str, profile, send: ValidatedSend) -> Dict[str, Any]:
        active = await self.matcher.active_links(main_user_uid)
        now = self.clock()
        payload = self.build_payload(send, AUDIENCE_BROADCAST, now)

        batch = self.store.batch()
        batch.set(f"users/{main_user_uid}/voiceMessages/latest", payload)
        batch.set(f"users/{main_user_uid}", {"latestVoiceMessage": payload, "updatedAt": now}, merge=True)
        self._write_last_message(batch, active, payload, now)
        await batch.commit()
        logger.info(f"Broadcast voice message from {main_user_uid} committed to {len(active)} active mirror docs")

        contact_uids = list(dict.fromkeys(uid for uid in (contact_uid_of(d.data) for d in active) if uid))
        tokens = await self.dispatcher.collect_tokens_for(contact_uids)
        push: Optional[PushResult] = None
        if tokens:
            name = display_name(profile, "your loved one")
            if send.anomaly_detected:
                title, body = "Life Signal alert", f"{name}'s voice check-in sounded unusual. Tap to review."
            else:
                title, body = "New voice check-in", f"{name} sent a voice check-in."
            push = await self.dispatcher.dispatch(
                tokens,
                title,
                body,
                {
                    "type": "voice_check_in_anomaly" if send.anomaly_detected else "voice_message_broadcast",
                    "mainUserUid": main_user_uid,
                    "anomalyDetected": "true" if send.anomaly_detected else "false",
                },
            )
        return self._response(AUDIENCE_BROADCAST, active, push)

    @staticmethod
    def _response(audience: str, docs: List[LinkDoc], push: Optional[PushResult]) -> Dict[str, Any]:
        return {
            "ok": True,
            "audience": audience,
            "updatedDocs": len(docs),
            "mirrors": mirror_summary(docs),
            "pushed": push is not None,
            "pushSuccess": push.success_count if push else 0,
            "pushFailure": push.failure_count if push else 0,
        }

    # ==================== CONTACT -> MAIN USER ====================

    async def ensure_linked(self, main_user_uid: str, contact_uid: str) -> None:
        links = await self.store.find(
            link_subcollection_path(main_user_uid),
            where={"emergencyContactUid": contact_uid, "status": ACTIVE_STATUS},
            limit=1,
        )
        if not links:
            raise NotAuthorized("Not linked to this user")

    async def reply_to_main_user(self, contact_uid: str, profile: Optional[Dict[str, Any]],
                                 request: ContactReplyRequest) -> Dict[str, Any]:
        main_user_uid = (request.mainUserUid or "").strip()
        if not main_user_uid:
            raise ValidationFailed("mainUserUid is required")
        transcript = (request.transcript or "").strip()
        audio = clean_audio_reference(request.audioDataUrl)
        if not transcript and not audio:
            raise ValidationFailed("transcript or audioDataUrl is required")
        await self.ensure_linked(main_user_uid, contact_uid)

        now = self.clock()
        message_id = self.store.new_id()
        sender = display_name(profile, "Your emergency contact")
        batch = self.store.batch()
        batch.set(f"users/{main_user_uid}/contactVoiceMessages/{message_id}", {
            "fromEmergencyContactUid": contact_uid,
            "fromName": sender,
            "transcript": transcript or None,
            "audioDataUrl": audio,
            "createdAt": now,
            "expiresAt": now + MESSAGE_TTL,
            "isRead": False,
        })
        await batch.commit()

        tokens = await self.dispatcher.collect_device_tokens(main_user_uid)
        push = None
        if tokens:
            push = await self.dispatcher.dispatch(
                tokens,
                "New voice message",
                f"{sender} sent you a voice message.",
                {"type": "contact_voice_message", "emergencyContactUid": contact_uid, "messageId": message_id},
            )
        return {
            "ok": True,
            "messageId": message_id,
            "pushed": push is not None,
            "pushSuccess": push.success_count if push else 0,
            "pushFailure": push.failure_count if push else 0,
        }

    async def latest_for_contact(self, main_user_uid: str, contact_uid: str) -> Optional[Dict[str, Any]]:
        contact_uid = (contact_uid or "").strip()
        if not contact_uid:
            raise ValidationFailed("contactUid is required")
        docs = await self.store.find(
            f"users/{main_user_uid}/contactVoiceMessages",
            where={"fromEmergencyContactUid": contact_uid},
            order_by=("createdAt", -1),
            limit=1,
        )
        if not docs:
            return None
        data = docs[0].data
        created_at = data.get("createdAt")
        audio = (data.get("audioUrl") or "").strip() or (data.get("audioDataUrl") or "").strip()
        transcript = data.get("transcript")
        return {
            "audioUrl": audio or None,
            "transcript": transcript if isinstance(transcript, str) and transcript.strip() else None,
            "createdAt": created_at.isoformat() if isinstance(created_at, datetime) else None,
        }

    async def mark_as_read(self, main_user_uid: str, message_id: str) -> Dict[str, Any]:
        message_id = (message_id or "").strip()
        if not message_id:
            raise ValidationFailed("messageId is required")
        if "/" in message_id:
            raise NotFound("Message not found")
        path = f"users/{main_user_uid}/contactVoiceMessages/{message_id}"
        snapshot = await self.store.get(path)
        if not snapshot.exists:
            raise NotFound("Message not found")
        batch = self.store.batch()
        batch.update(path, {"isRead": True, "updatedAt": self.clock()})
        await batch.commit()
        return {"ok": True, "messageId": message_id}
