"""
src/config.py

Defaults for tool generation, execution and the tool-calling loop.
Values that differ per deployment are read from the environment.
"""


import logging
import os
from enum import Enum
from typing import Dict, Optional, Tuple


class Persona(str, Enum):

    PA = "PA"
    ACCOUNTANT = "Accountant"
    INTERN = "Intern"

class Currency(str, Enum):

    USD = "USD"
    GBP = "GBP"
    EUR = "EUR"


def _env_flag(name: str, default: bool = False) -> bool:

    raw = os.getenv(name)

    if raw is None:
        return default

    return raw.strip().lower() in ("1", "true", "yes", "on")


# Defaults
DEFAULT_PERSONA: Persona = Persona.PA
DEFAULT_CURRENCY: Currency = Currency.USD
DEFAULT_TERM_DAYS: int = 14                 # Payment term
CURRENCY_SYMBOLS: Dict[str, str] = {
    "USD": "$",
    "GBP": "£",
    "EUR": "€"
}

OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
DEFAULT_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
DEFAULT_TEMPERATURE: float = 0.2

DEFAULT_MAX_ITERATIONS: int = int(os.getenv("TOOL_LOOP_MAX_ITERATIONS", "10"))
DEFAULT_TIMEOUT_SECONDS: float = float(os.getenv("TOOL_LOOP_TIMEOUT_SECONDS", "60"))
DEFAULT_TOOL_RETRIES: int = 1
STREAM_BUFFER_SIZE: int = 64                # Bounded channel between loop producer and caller

DEFAULT_PAGE_SIZE: int = 25                 # Query limit when the operation configures none
DEFAULT_ACTION_PARAMETERS: Tuple[str, ...] = ("filter", "sort", "limit", "offset", "result_type")
AGGREGATE_KINDS: Tuple[str, ...] = ("min", "max", "sum", "avg", "count")
QUERY_RESULT_TYPES: Tuple[str, ...] = ("run_query", "count", "exists")

# Include raw tracebacks in 500 envelopes. Off by default: envelopes are read by an LLM.
SHOW_RAISED_ERRORS: bool = _env_flag("SHOW_RAISED_ERRORS")

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def format_money(amount: float, currency: Currency) -> str:
    """Very simple currency formatter"""

    sym = CURRENCY_SYMBOLS[Currency(currency).value]

    return f"{sym}{amount:,.2f}"

def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for scripts and the demo app."""

    logging.basicConfig(level=(level or LOG_LEVEL).upper(), format=LOG_FORMAT)
# EOF
