"""
Forum Sniper - AI Fallback Planner
Asks a language model for an ordered fill-and-submit plan when the
heuristic form shape does not hold (missing fields, open-ended questions).
"""

import abc
import json
import logging
import re
from typing import Optional

from openai import OpenAI

from .config import Config
from .models import FillPlan, Target

logger = logging.getLogger("ForumSniper.AI")

PROMPT_TEMPLATE = """
You are an expert form filler. Your task is to analyze the provided HTML form and generate a JSON object to fill it.

CONTEXT:
- User Persona: {persona}
- User Data:
  - Pseudo: {pseudo}
  - Email: {email}
  - Password: {password}

INSTRUCTIONS:
1. Identify all input fields (text, email, password, textarea, select, radio, checkbox).
2. Map the User Data to the appropriate fields.
3. For any other field (security questions, "why join", location, etc.), GENERATE A REALISTIC ANSWER based on the persona.
4. IGNORE hidden fields unless they look critical (like anti-bot tokens that need unmodified values, usually skip).
5. IGNORE search bars or login fields if this is a registration page. Focus on Registration.

OUTPUT FORMAT (JSON ONLY):
{{
  "fill_actions": [
    {{ "selector": "css_selector_for_field", "value": "value_to_fill", "action": "fill" }},
    {{ "selector": "css_selector_for_checkbox", "value": "true", "action": "check" }}
  ],
  "submit_selector": "css_selector_for_submit_button"
}}

HTML FORM SEGMENT:
{html}
"""

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class AIFallbackPlanner(abc.ABC):
    @abc.abstractmethod
    def plan(self, html_fragment: str, target: Target) -> Optional[FillPlan]:
        """Ordered fill plan, or None when no usable plan could be produced"""


def parse_plan(text: str) -> Optional[FillPlan]:
    """Decode a model reply (optionally wrapped in a code fence) into a FillPlan"""
    if not text:
        return None
    try:
        data = json.loads(_FENCE.sub("", text.strip()))
    except ValueError:
        logger.warning("[AI] Reply was not valid JSON")
        return None
    return FillPlan.from_dict(data)


class OpenRouterPlanner(AIFallbackPlanner):
    """OpenAI-compatible chat completion in JSON mode (OpenRouter by default)"""

    def __init__(self, api_key: str, model: Optional[str] = None, base_url: Optional[str] = None,
                 persona: Optional[str] = None, html_limit: Optional[int] = None,
                 timeout: Optional[float] = None, client: Optional[OpenAI] = None):
        self.model = model or Config.ai_model()
        self.persona = persona or Config.AI_PERSONA
        self.html_limit = html_limit or Config.AI_HTML_LIMIT
        self.client = client or OpenAI(
            base_url=base_url or Config.AI_BASE_URL,
            api_key=api_key,
            timeout=timeout or Config.AI_TIMEOUT,
            default_headers={
                "HTTP-Referer": "http://localhost:3000",
                "X-Title": "Forum Sniper",
            }
        )

    def build_prompt(self, html_fragment: str, target: Target) -> str:
        return PROMPT_TEMPLATE.format(
            persona=self.persona,
            pseudo=target.pseudo,
            email=target.email,
            password=target.password,
            html=(html_fragment or "")[:self.html_limit],
        )

    def plan(self, html_fragment: str, target: Target) -> Optional[FillPlan]:
        logger.info(f"[AI] Sending form to {self.model} for analysis...")
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": self.build_prompt(html_fragment, target)}],
                response_format={"type": "json_object"},
            )
            content = completion.choices[0].message.content
        except Exception as e:
            logger.error(f"[AI] Error: {e}")
            return None

        fill_plan = parse_plan(content)
        if fill_plan:
            logger.info(f"[AI] Analysis complete: {len(fill_plan.actions)} action(s)")
        else:
            logger.warning("[AI] Model returned no usable plan")
        return fill_plan


def build_planner() -> Optional[AIFallbackPlanner]:
    """Configured planner, or None when no API key is set"""
    if not Config.OPENROUTER_API_KEY:
        return None
    return OpenRouterPlanner(Config.OPENROUTER_API_KEY)
