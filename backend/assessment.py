import json
import logging
import os
from typing import List, Optional

from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

ASSESSMENT_MODEL = os.environ.get("ASSESSMENT_MODEL", "gpt-4o-mini")

ASSESSMENT_PROMPT = (
    "You are an assistant specializing in behavioral biometrics and voice analysis.\n"
    "Compare the user's transcribed voice check-in with their previous voice messages.\n"
    "Consider speech rate, unusual pauses or hesitations, atypical phrases or vocabulary, "
    "and emotional tone (unusually subdued or agitated).\n"
    "Decide whether there is a noticeable anomaly suggesting the user might not be okay.\n"
    "Return strict JSON only: {\"anomalyDetected\": true|false, \"explanation\": \"...\"}."
)

# Initialize OpenAI client (lazy initialization)
openai_client = None


def get_openai_client():
    global openai_client
    if openai_client is None:
        openai_client = AsyncOpenAI(api_key=os.environ.get("OPENAI_API_KEY", ""))
    return openai_client


class VoiceCheckInRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")
    transcribedSpeech: Optional[str] = None
    previousVoiceMessages: List[str] = Field(default_factory=list)


class VoiceCheckInAssessment(BaseModel):
    anomalyDetected: bool
    explanation: str


async def assess_voice_check_in(transcribed_speech: str, previous_messages: List[str]) -> VoiceCheckInAssessment:
    """Ask the model whether a check-in deviates from the user's usual messages."""
    if not os.environ.get("OPENAI_API_KEY"):
        return VoiceCheckInAssessment(anomalyDetected=False, explanation="Assessment unavailable")

    history = "\n".join(f"- {m}" for m in previous_messages if m and m.strip()) or "(none)"
    client = get_openai_client()
    completion = await client.chat.completions.create(
        model=ASSESSMENT_MODEL,
        temperature=0,
        max_tokens=200,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": ASSESSMENT_PROMPT},
            {
                "role": "user",
                "content": f"Transcribed speech: {transcribed_speech}\nPrevious voice messages:\n{history}",
            },
        ],
    )
    raw = (completion.choices[0].message.content or "").strip()
    parsed = json.loads(raw) if raw else {}
    explanation = str(parsed.get("explanation") or "").strip()
    if not explanation:
        raise ValueError("Assessment response missing explanation")
    return VoiceCheckInAssessment(anomalyDetected=bool(parsed.get("anomalyDetected")), explanation=explanation)
