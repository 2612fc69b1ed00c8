"""
Gemini REST client and prompt handling for AI policy recommendations.
"""

import json
import logging
import re
from typing import List, Optional

import httpx
from fastapi import status
from pydantic import BaseModel, Field

from dmarcwatch.config import get_settings
from dmarcwatch.error_handlers import APIError

logger = logging.getLogger(__name__)

POLICIES = ("none", "quarantine", "reject")
MAX_LIST_ITEMS = 5

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class AiProviderError(APIError):
    """The AI provider call failed or returned something unusable"""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            error_code="AI_PROVIDER_ERROR",
            retryable=True
        )


class SourceCounts(BaseModel):
    legitimate: int = 0
    unknown: int = 0
    suspicious: int = 0
    forwarded: int = 0


class DmarcContext(BaseModel):
    """Statistical snapshot of a domain sent to the model"""
    domain: str
    dmarc_record: Optional[str] = None
    spf_record: Optional[str] = None
    current_policy: str = "none"
    pass_rate_7_days: float = 0.0
    pass_rate_30_days: float = 0.0
    pass_rate_all_time: float = 0.0
    total_messages: int = 0
    days_monitored: int = 0
    sources: SourceCounts = Field(default_factory=SourceCounts)


class AiRecommendation(BaseModel):
    """Normalised model output"""
    summary: str
    recommended_policy: str
    confidence: int
    reasoning: str
    dns_insights: Optional[str] = None
    risks: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    ready_to_upgrade: bool = False


def build_prompt(context: DmarcContext) -> str:
    """Render the analysis prompt for a domain"""
    return f"""You are an expert email security consultant specialising in DMARC, SPF, and DKIM. Analyse this domain's email authentication posture and provide actionable insights.

## Domain: {context.domain}

## Current DNS Configuration:
- DMARC Record: {context.dmarc_record or 'Not configured'}
- SPF Record: {context.spf_record or 'Not configured'}
- Current DMARC Policy: p={context.current_policy}

## Email Authentication Metrics:
- Monitoring Duration: {context.days_monitored} days
- Total Messages Analysed: {context.total_messages:,}
- Pass Rate (last 7 days): {context.pass_rate_7_days:.1f}%
- Pass Rate (last 30 days): {context.pass_rate_30_days:.1f}%
- Pass Rate (all time): {context.pass_rate_all_time:.1f}%

## Sending Sources:
- Legitimate (verified): {context.sources.legitimate}
- Unknown (unclassified): {context.sources.unknown}
- Suspicious: {context.sources.suspicious}
- Forwarded: {context.sources.forwarded}

## Your Analysis Should Include:

1. **Summary**: A one-line headline summarising the domain's current state
2. **Detailed Analysis**: Explain what the data tells us about this domain's email security
3. **DNS Record Review**: Comment on the SPF and DMARC configuration if provided
4. **Policy Recommendation**: Whether to stay, upgrade, or (rarely) downgrade
5. **Specific Risks**: What could go wrong, be specific to this domain's situation
6. **Actionable Next Steps**: Prioritised actions the domain owner should take

IMPORTANT GUIDELINES:
- NEVER recommend downgrading from 'reject' unless pass rates are critically low (<70%) for 14+ days
- Unknown sources are a key blocker - they MUST be classified before policy upgrades
- Consider forwarding issues (mailing lists, auto-forwards break DMARC)
- If the SPF record looks misconfigured or overly permissive, mention it
- Be specific and actionable, not generic

Respond in this exact JSON format:
{{
  "summary": "<One compelling sentence about the domain's email security status>",
  "recommendedPolicy": "none" | "quarantine" | "reject",
  "confidence": <0-100>,
  "reasoning": "<3-4 sentences explaining your analysis and recommendation>",
  "dnsInsights": "<1-2 sentences about SPF/DMARC record quality, or null if not applicable>",
  "risks": ["<specific risk 1>", "<specific risk 2>"],
  "nextSteps": ["<prioritised action 1>", "<prioritised action 2>", "<action 3>"],
  "readyToUpgrade": <boolean>
}}

Policy upgrade thresholds:
- none → quarantine: 95%+ pass rate, 14+ days monitoring, 5 or fewer unknown sources
- quarantine → reject: 98%+ pass rate, 30+ days monitoring, 0 unknown sources, 500+ messages"""


def _clamp_confidence(value) -> int:
    try:
        confidence = int(float(value))
    except (TypeError, ValueError):
        confidence = 50
    return max(0, min(100, confidence))


def _string_list(value) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value[:MAX_LIST_ITEMS]]


def parse_recommendation(text: str) -> AiRecommendation:
    """
    Extract and normalise the JSON object in a model reply.

    Markdown fences and surrounding prose are tolerated. Unknown policies
    fall back to 'none', confidence is clamped to 0-100 and lists are cut
    to five entries.

    Raises:
        AiProviderError: No parseable JSON object in the reply
    """
    if not text:
        raise AiProviderError("Empty response from AI provider")

    match = _JSON_OBJECT.search(text)
    if not match:
        raise AiProviderError("No JSON found in AI response")

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise AiProviderError(f"Failed to parse AI response: {e}")
    if not isinstance(parsed, dict):
        raise AiProviderError("AI response is not a JSON object")

    dns_insights = parsed.get("dnsInsights")
    if not isinstance(dns_insights, str) or dns_insights.strip().lower() in ("", "null"):
        dns_insights = None

    policy = parsed.get("recommendedPolicy")
    return AiRecommendation(
        summary=str(parsed.get("summary") or "Email authentication analysis complete"),
        recommended_policy=policy if policy in POLICIES else "none",
        confidence=_clamp_confidence(parsed.get("confidence")),
        reasoning=str(parsed.get("reasoning") or "Unable to generate reasoning"),
        dns_insights=dns_insights,
        risks=_string_list(parsed.get("risks")),
        next_steps=_string_list(parsed.get("nextSteps")),
        ready_to_upgrade=bool(parsed.get("readyToUpgrade")),
    )


class GeminiClient:
    """Minimal client for the Gemini generateContent endpoint"""

    def __init__(self, api_key: str, http_client: Optional[httpx.Client] = None):
        settings = get_settings()
        self.api_key = api_key
        self.model = settings.gemini_model
        self.base_url = settings.gemini_base_url.rstrip("/")
        self.temperature = settings.gemini_temperature
        self.max_output_tokens = settings.gemini_max_output_tokens
        self.timeout = settings.gemini_timeout
        # Injected clients are owned by the caller; otherwise one is opened per request
        self.http_client = http_client

    def complete(self, prompt: str) -> str:
        """
        Send a prompt and return the first candidate's text.

        Raises:
            AiProviderError: Transport failure, non-2xx status or empty reply
        """
        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

        try:
            if self.http_client is not None:
                response = self.http_client.post(url, params={"key": self.api_key}, json=payload)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, params={"key": self.api_key}, json=payload)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning("Gemini request failed", extra={"error": str(e)})
            raise AiProviderError(f"AI provider request failed: {e}")

        if response.status_code >= 400:
            logger.warning(
                "Gemini API error",
                extra={"status_code": response.status_code, "body": response.text[:500]}
            )
            raise AiProviderError(f"Gemini API error: {response.status_code}")

        try:
            data = response.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise AiProviderError("Empty response from Gemini")

        if not text:
            raise AiProviderError("Empty response from Gemini")
        return text

    def generate(self, context: DmarcContext) -> AiRecommendation:
        return parse_recommendation(self.complete(build_prompt(context)))
