"""
AI Provider
Thin client for the Anthropic Messages API, called with `requests` the same
way the rest of the app talks to outside services.

Two calls are supported:
- streaming chat about the user's own data (text chunks as a generator)
- one-shot weekly insight generation (JSON parsed into insights/summary/recs)
"""

import json
import logging
import re
from typing import Any, Dict, Iterator, List, Optional

import requests

from config import Config

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
CHAT_MAX_TOKENS = 1000
ANALYSIS_MAX_TOKENS = 2000
REQUEST_TIMEOUT = 60


class AIProviderError(Exception):
    """The AI provider is not configured or the call failed."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


CHAT_SYSTEM_PROMPT = """You are Pep AI, a data assistant for a peptide dose tracker. You can see the user's protocols, logged doses and wearable health metrics. Answer questions about THEIR data in a friendly, informative way.

BOUNDARIES - NEVER VIOLATE:
1. You are NOT a doctor and do NOT give medical advice, diagnosis or treatment
2. You do NOT tell users to start, stop or change a protocol or dose
3. You do NOT interpret symptoms or side effects medically

GUIDELINES:
- Reference specific numbers and dates from their data when relevant
- If the data does not support a clear answer, say so
- Keep responses concise but complete
- If asked about something outside their data, politely redirect
- Point users to their healthcare provider for any medical decision

The user's current context follows."""

WEEKLY_ANALYSIS_SYSTEM_PROMPT = """You are the insights engine for a peptide protocol tracker. Analyze peptide dosing data alongside wearable health metrics to help the user understand how their protocols may be affecting them.

CORE PRINCIPLES:
1. NEVER claim causation - only note correlations and possibilities
2. Frame all insights as observations, not medical advice
3. Be specific with numbers, percentages and timeframes
4. Highlight positive trends and potential concerns equally
5. If data is insufficient for a conclusion, say so clearly

OUTPUT FORMAT:
Return a JSON object with this exact structure:
{
  "insights": [
    {
      "type": "correlation" | "timing" | "compliance" | "anomaly" | "trend",
      "severity": "info" | "notable" | "alert",
      "title": "Short descriptive title",
      "body": "Full insight explanation (2-4 sentences)",
      "metrics": ["list", "of", "relevant", "metrics"],
      "confidence": "possible" | "likely" | "strong",
      "data_points": { "relevant": "numbers" }
    }
  ],
  "weekly_summary": "2-3 paragraph prose summary of the week",
  "recommendations": ["actionable", "suggestions"]
}

Aim for 3-5 insights per analysis, mixing types."""

FALLBACK_INSIGHTS = {
    "insights": [{
        "type": "trend",
        "severity": "info",
        "title": "Analysis Complete",
        "body": "We analyzed your data but could not format the detailed insights. Please try again.",
        "metrics": [],
        "confidence": "possible",
        "data_points": {},
    }],
    "weekly_summary": "Unable to generate detailed summary. Please try regenerating.",
    "recommendations": ["Try regenerating insights", "Ensure you have at least 7 days of data"],
}

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def _dump(value) -> str:
    return json.dumps(value, indent=2, default=str)


def build_chat_context_prompt(context) -> str:
    """Render a ChatContext (or its dict form) as the prompt's context block."""
    data = context.to_dict() if hasattr(context, "to_dict") else dict(context or {})
    prompt = (
        "USER'S CURRENT CONTEXT:\n\n"
        f"Active Protocols:\n{_dump(data.get('activeProtocols', []))}\n\n"
        f"Recent Doses (last 7 days):\n{_dump(data.get('recentDoses', []))}\n\n"
        f"Wearable Health Summary (last 7 days):\n{_dump(data.get('garminSummary', []))}\n"
    )
    latest = data.get("latestInsights")
    if latest and latest.get("weeklySummary"):
        prompt += f"\nLatest AI Insights:\n{latest['weeklySummary']}\n"
    return prompt


def build_analysis_prompt(user_data: Dict[str, Any]) -> str:
    return (
        f"USER'S ACTIVE PROTOCOLS:\n{_dump(user_data.get('activeProtocols', []))}\n\n"
        f"RECENT PROTOCOL CHANGES (last 30 days):\n{_dump(user_data.get('protocolChanges', []))}\n\n"
        f"DOSE LOGS (past 7 days):\n{_dump(user_data.get('doseLogs', []))}\n\n"
        f"WEARABLE METRICS (past 7 days):\n{_dump(user_data.get('garminData', []))}\n\n"
        f"BASELINE AVERAGES (previous 4 weeks):\n{_dump(user_data.get('baselineMetrics', {}))}\n\n"
        f"PRE-COMPUTED CORRELATIONS:\n{_dump(user_data.get('correlations', []))}\n\n"
        "Analyze this data and provide insights following your system prompt guidelines. "
        "Return only valid JSON."
    )


def parse_insights_response(text: str) -> Dict[str, Any]:
    """Parse the model's JSON answer, tolerating ```json fences.

    Anything unparseable yields FALLBACK_INSIGHTS instead of raising.
    """
    raw = text or ""
    match = _FENCED_JSON.search(raw)
    if match:
        raw = match.group(1)
    try:
        parsed = json.loads(raw.strip())
        if not isinstance(parsed, dict) or not isinstance(parsed.get("insights"), list):
            raise ValueError("missing insights array")
    except ValueError:
        logger.warning("Could not parse insights response: %.200s", text)
        return json.loads(json.dumps(FALLBACK_INSIGHTS))

    insights = []
    for item in parsed["insights"]:
        item = item if isinstance(item, dict) else {}
        insights.append({
            "type": item.get("type") or "trend",
            "severity": item.get("severity") or "info",
            "title": item.get("title") or "Insight",
            "body": item.get("body") or "",
            "metrics": item.get("metrics") or [],
            "confidence": item.get("confidence") or "possible",
            "data_points": item.get("data_points") or {},
        })
    return {
        "insights": insights,
        "weekly_summary": parsed.get("weekly_summary") or "",
        "recommendations": parsed.get("recommendations") or [],
    }


class AIProvider:
    """Anthropic Messages API over requests"""

    def __init__(self, api_key: Optional[str] = None, api_url: Optional[str] = None,
                 chat_model: Optional[str] = None, analysis_model: Optional[str] = None,
                 http=None, timeout: int = REQUEST_TIMEOUT):
        self.api_key = api_key if api_key is not None else Config.ANTHROPIC_API_KEY
        self.api_url = api_url or Config.ANTHROPIC_API_URL
        self.chat_model = chat_model or Config.CHAT_MODEL
        self.analysis_model = analysis_model or Config.ANALYSIS_MODEL
        self.http = http or requests.Session()
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _post(self, payload: Dict[str, Any], stream: bool = False):
        if not self.configured:
            raise AIProviderError("AI service not configured (missing ANTHROPIC_API_KEY)", 503)
        try:
            resp = self.http.post(self.api_url, headers=self._headers(), json=payload,
                                  timeout=self.timeout, stream=stream)
        except requests.exceptions.Timeout as e:
            raise AIProviderError("AI provider timed out", 504) from e
        except requests.exceptions.RequestException as e:
            raise AIProviderError(f"AI provider request failed: {e}") from e

        if resp.status_code >= 400:
            resp.close()
            if resp.status_code == 401:
                raise AIProviderError("AI provider rejected the API key", 503)
            if resp.status_code == 429:
                raise AIProviderError("Rate limit exceeded. Please try again later.", 429)
            raise AIProviderError(f"AI provider error ({resp.status_code})")
        return resp

    # ==================== CHAT ====================

    def stream_chat_response(self, messages: List[Dict[str, str]], context,
                             cancel_event=None) -> Iterator[str]:
        """Yield text chunks of the assistant's reply.

        Stops as soon as `cancel_event` is set or the generator is closed;
        the upstream HTTP response is closed either way.
        """
        payload = {
            "model": self.chat_model,
            "max_tokens": CHAT_MAX_TOKENS,
            "system": f"{CHAT_SYSTEM_PROMPT}\n\n{build_chat_context_prompt(context)}",
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "stream": True,
        }
        resp = self._post(payload, stream=True)
        try:
            for line in resp.iter_lines(decode_unicode=True):
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Chat stream cancelled by client")
                    return
                if not line or not line.startswith("data:"):
                    continue
                try:
                    event = json.loads(line[5:].strip())
                except ValueError:
                    continue
                kind = event.get("type")
                if kind == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield delta["text"]
                elif kind == "message_delta" and event.get("usage"):
                    logger.debug("Chat usage: %s", event["usage"])
                elif kind == "error":
                    message = (event.get("error") or {}).get("message", "stream error")
                    raise AIProviderError(f"AI provider stream error: {message}")
                elif kind == "message_stop":
                    return
        finally:
            resp.close()

    # ==================== WEEKLY INSIGHTS ====================

    def generate_weekly_insights(self, user_data: Dict[str, Any]) -> Dict[str, Any]:
        """Returns parsed insights plus model and token usage."""
        payload = {
            "model": self.analysis_model,
            "max_tokens": ANALYSIS_MAX_TOKENS,
            "system": WEEKLY_ANALYSIS_SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": build_analysis_prompt(user_data)}],
        }
        resp = self._post(payload)
        try:
            data = resp.json()
        except ValueError as e:
            raise AIProviderError("AI provider returned invalid JSON") from e

        text = next(
            (block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"),
            None,
        )
        if text is None:
            raise AIProviderError("No text response from AI provider")

        usage = data.get("usage") or {}
        result = parse_insights_response(text)
        result["model"] = data.get("model") or self.analysis_model
        result["input_tokens"] = usage.get("input_tokens", 0)
        result["output_tokens"] = usage.get("output_tokens", 0)
        return result
