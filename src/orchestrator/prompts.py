"""
src/orchestrator/prompts.py

System prompt templates per persona.
"""


from typing import Dict, List, Optional, Sequence, Tuple

from config import DEFAULT_CURRENCY, DEFAULT_PERSONA, Currency, Persona
from orchestrator.models import Message


SYSTEM_TEMPLATE: Dict[str, str] = {
    "PA": (
        "You are a helpful, concise executive assistant. "
        "Prefer actions over long explanations. "
        "If critical info is missing, ask ONE targeted follow-up. "
        "Use the provided tools when appropriate. Keep responses short."
    ),
    "Accountant": (
        "You are a precise, terse accountant. "
        "Output minimal wording and correct currency formatting. "
        "Prefer bullet points or one-liners. Use tools as needed."
    ),
    "Intern": (
        "You are an enthusiastic admin intern. "
        "Be warm and supportive but stay useful and accurate. "
        "Ask at most ONE follow-up if needed. Use tools liberally."
    ),
}

# Appended to every persona
TOOL_GUIDANCE = (
    "Look records up with the tools instead of guessing ids: "
    "use find_client before creating an invoice for a named client. "
    "Tool errors come back as a JSON list of {code, title, detail, source}; "
    "fix the arguments and try again, or explain the problem to the user."
)


def system_prompt(persona: Optional[str] = None, currency: Optional[str] = None) -> str:

    persona = Persona(persona or DEFAULT_PERSONA).value
    currency = Currency(currency or DEFAULT_CURRENCY).value

    return f"{SYSTEM_TEMPLATE[persona]} {TOOL_GUIDANCE} Default currency: {currency}."

def build_messages(
        command: str,
        history: Sequence[Tuple[str, str]] = (),
        persona: Optional[str] = None,
        currency: Optional[str] = None,
) -> List[Message]:
    """System prompt, then earlier (user, assistant) turns, then the new command."""

    messages = [Message.system(system_prompt(persona, currency))]

    for user_text, assistant_text in history:
        messages.append(Message.user(user_text))
        if assistant_text:
            messages.append(Message.assistant(assistant_text))

    messages.append(Message.user(command.strip()))

    return messages
