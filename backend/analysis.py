import logging
from datetime import datetime, timezone
from typing import List, Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

ANALYSIS_WINDOW_MS = 7 * 24 * 60 * 60 * 1000
NOT_RECORDED = "Not recorded"

NO_DATA_MESSAGE = (
    "No data available for the last 7 days. "
    "Please ensure patient logs are being recorded regularly."
)
AI_UNAVAILABLE_NOTE = "AI analysis unavailable, showing basic analysis"
AI_NOT_CONFIGURED_NOTE = (
    "AI analysis not configured. Set OPENAI_API_KEY in .env file for AI-powered analysis."
)

SYSTEM_MESSAGE = (
    "You are a professional healthcare AI assistant that provides detailed, accurate, "
    "and helpful analysis of patient care data. Always be professional, empathetic, "
    "and focus on actionable insights."
)

# Compliance thresholds (percent) for the basic analysis
FOOD_THRESHOLD = 70
MEDICATION_THRESHOLD = 90
HYDRATION_THRESHOLD = 60


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class TextGenerator:
    """Chat-completion backed text generation, created once at startup."""

    def __init__(self, client: AsyncOpenAI, model: str, max_tokens: int = 1000, temperature: float = 0.7):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def complete(self, system_message: str, prompt: str) -> str:
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_message},
                {"role": "user", "content": prompt}
            ],
            max_tokens=self.max_tokens,
            temperature=self.temperature
        )
        return (completion.choices[0].message.content or "").strip()


def build_text_generator(api_key: Optional[str], model: str) -> Optional[TextGenerator]:
    """Return a generator when an API key is configured, otherwise None."""
    if not api_key:
        return None
    return TextGenerator(AsyncOpenAI(api_key=api_key), model)


def _format_timestamp(created_at_ms: int, fmt: str) -> str:
    return datetime.fromtimestamp(created_at_ms / 1000, tz=timezone.utc).strftime(fmt)


def _field_text(log: dict, key: str, default: str) -> str:
    # Log content is unvalidated; numbers and other JSON values are shown as text
    value = log.get(key)
    if value is None or value == "":
        return default
    return str(value)


def summarize_patient_logs(patient: dict, logs: List[dict]) -> dict:
    """Build the structured summary used by both the prompt and the basic analysis."""
    summary_logs = []
    for log in logs:
        created_at = log.get("createdAt") or 0
        sleep_start = _field_text(log, "sleepStart", "")
        sleep_end = _field_text(log, "sleepEnd", "")
        summary_logs.append({
            "date": _format_timestamp(created_at, "%Y-%m-%d"),
            "time": _format_timestamp(created_at, "%H:%M:%S"),
            "mood": _field_text(log, "mood", NOT_RECORDED),
            "sleep": f"{sleep_start} - {sleep_end}" if sleep_start and sleep_end else NOT_RECORDED,
            "hydration": _field_text(log, "hydration", NOT_RECORDED),
            "food": _field_text(log, "food", NOT_RECORDED),
            "medication": _field_text(log, "meds", NOT_RECORDED),
            "antecedent": _field_text(log, "antecedent", ""),
            "behavior": _field_text(log, "behavior", ""),
            "consequence": _field_text(log, "consequence", ""),
            "note": _field_text(log, "note", "")
        })
    return {
        "patientId": patient.get("id"),
        "patientName": patient.get("name") or f"Patient {patient.get('id')}",
        "diagnosis": patient.get("diagnosis") or "Not specified",
        "daysAnalyzed": len(summary_logs),
        "logs": summary_logs
    }


def build_analysis_prompt(summary: dict) -> str:
    day_blocks = []
    for idx, log in enumerate(summary["logs"]):
        lines = [
            f"Day {idx + 1} ({log['date']}):",
            f"- Time: {log['time']}",
            f"- Mood: {log['mood']}",
            f"- Sleep: {log['sleep']}",
            f"- Hydration: {log['hydration']}",
            f"- Food: {log['food']}",
            f"- Medication: {log['medication']}"
        ]
        for label, key in (("Antecedent", "antecedent"), ("Behavior", "behavior"),
                           ("Consequence", "consequence"), ("Note", "note")):
            if log[key]:
                lines.append(f"- {label}: {log[key]}")
        day_blocks.append("\n".join(lines))

    daily_logs = "\n\n".join(day_blocks)
    return f"""You are a healthcare AI assistant analyzing patient care data. Analyze the following 7-day patient data and provide a comprehensive text analysis focusing on:

1. Overall condition trends (improving, stable, or concerning)
2. Sleep patterns and quality
3. Nutrition and hydration compliance
4. Medication adherence
5. Mood patterns and behavioral observations
6. Any concerning patterns or red flags
7. Recommendations for care adjustments

Patient Information:
- Name: {summary['patientName']}
- Diagnosis: {summary['diagnosis']}
- Days with data: {summary['daysAnalyzed']}

Daily Logs:
{daily_logs}

Provide a detailed, professional analysis in 3-4 paragraphs. Be specific about patterns, concerns, and recommendations."""


def compliance_percent(count: int, total: int) -> int:
    """Whole-number percentage, halves rounded up."""
    return int(count * 100 / total + 0.5)


def hydration_recorded(value: str) -> bool:
    return bool(value) and ("drank" in value or value == "full")


def build_basic_analysis(summary: dict) -> str:
    """Deterministic summary used when AI analysis is unavailable.

    Only called with at least one log, the no-data case is answered earlier.
    """
    logs = summary["logs"]
    total = len(logs)
    moods = [l["mood"] for l in logs if l["mood"] and l["mood"] not in (NOT_RECORDED, "—")]
    food_percent = compliance_percent(sum(1 for l in logs if l["food"] == "full"), total)
    med_percent = compliance_percent(sum(1 for l in logs if l["medication"] == "given"), total)
    hydration_percent = compliance_percent(sum(1 for l in logs if hydration_recorded(l["hydration"])), total)

    name = summary["patientName"]
    parts = [
        f"**7-Day Analysis for {name}**\n\n",
        f"**Overview:** This analysis covers {total} days of recorded data for {name} ({summary['diagnosis']}).\n\n",
        f"**Mood Patterns:** {'Observed moods: ' + ', '.join(moods) if moods else 'Limited mood data available'}.\n\n",
        "**Compliance Metrics:**\n",
        f"- Food intake: {food_percent}% full meals\n",
        f"- Medication: {med_percent}% given on time\n",
        f"- Hydration: {hydration_percent}% compliance\n\n",
        "**Recommendations:** "
    ]

    recommendations = []
    if food_percent < FOOD_THRESHOLD:
        recommendations.append("Monitor food intake closely.")
    if med_percent < MEDICATION_THRESHOLD:
        recommendations.append("Review medication schedule adherence.")
    if hydration_percent < HYDRATION_THRESHOLD:
        recommendations.append("Encourage increased hydration.")
    if not recommendations:
        recommendations.append("Overall compliance is good. Continue current care plan.")
    parts.append(" ".join(recommendations))

    parts.append(
        "\n\n*Note: For detailed AI-powered analysis, configure OPENAI_API_KEY in your environment variables.*"
    )
    return "".join(parts)


async def generate_analysis(patient: dict, logs: List[dict], text_generator: Optional[TextGenerator]) -> dict:
    """Analyze a patient's trailing window of logs (oldest first).

    AI failures degrade to the basic analysis and are never raised.
    """
    if not logs:
        return {"analysis": NO_DATA_MESSAGE, "hasData": False}

    summary = summarize_patient_logs(patient, logs)

    if text_generator is None:
        return {
            "analysis": build_basic_analysis(summary),
            "hasData": True,
            "note": AI_NOT_CONFIGURED_NOTE
        }

    try:
        analysis = await text_generator.complete(SYSTEM_MESSAGE, build_analysis_prompt(summary))
    except Exception as e:
        logger.error(f"AI analysis error for patient {summary['patientId']}: {e}")
        return {
            "analysis": build_basic_analysis(summary),
            "hasData": True,
            "degraded": True,
            "note": AI_UNAVAILABLE_NOTE
        }

    return {"analysis": analysis, "hasData": True, "generatedAt": now_ms()}
