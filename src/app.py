"""
src/app.py

Local chat demo over the reference business workspace. Streams the tool loop:
text appears as the model writes it, and every tool call lands in the audit log.

Run: python src/app.py (needs OPENAI_API_KEY and the "demo" extra).
"""


import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

import gradio as gr

from config import Currency, Persona, DEFAULT_CURRENCY, DEFAULT_PERSONA, configure_logging
from entities.business import build_provider
from entities.permissions import ACTION_MATRIX
from orchestrator import prompts
from orchestrator.llm_openai import OpenAIProvider
from orchestrator.loop import OnToolError, ToolLoop
from tools.registry import ToolSelection, build


APP_TITLE = "Business-Assistant (Local Demo)"
APP_DESC = (
    "Type short commands like: "
    "'create invoice for Acme for August retainer' or 'move Hire designer to Doing'. "
    "The role decides which tools the assistant is given."
)
ROLES = ["owner", "manager", "member", "viewer"]

_PROVIDER = None
_LLM = None


def _provider():

    global _PROVIDER
    if _PROVIDER is None:
        _PROVIDER = build_provider()

    return _PROVIDER

def _llm():

    global _LLM
    if _LLM is None:
        _LLM = OpenAIProvider()

    return _LLM

def _audit(step: str, ok: bool, detail: str) -> Dict[str, Any]:

    return {
        "ts": datetime.now(timezone.utc).isoformat(),
        "step": step,
        "ok": ok,
        "detail": detail,
    }

def handle_command(
        command: str,
        persona: str,
        currency: str,
        role: str,
        llm: Any = None,
        provider: Any = None,
) -> Iterator[Tuple[str, str]]:
    """
    Run one command through the streaming loop.

    Yields (reply_markdown, audit_log_json) after every event so the UI
    updates live.
    """

    provider = provider or _provider()
    toolkit = build(provider, ToolSelection(actor={"role": role}))
    loop = ToolLoop(llm or _llm(), toolkit, on_tool_error=OnToolError.CONTINUE)

    reply = ""
    audit: List[Dict[str, Any]] = [_audit("select_tools", True, f"{len(toolkit.tools)} tools for role '{role}'")]

    with loop.stream(prompts.build_messages(command, persona=persona, currency=currency)) as events:
        for event in events:
            if event.type == "text":
                reply += event.text
            elif event.type == "tool_call":
                audit.append(_audit("tool_call", True, f"{event.call.name} {event.call.arguments or '{}'}"))
            elif event.type == "tool_result":
                audit.append(_audit("tool_result", event.ok, event.result))
            elif event.type == "done":
                reply = event.result.text or reply
                audit.append(_audit("done", True, f"{event.result.iterations} iteration(s)"))
            elif event.type == "error":
                audit.append(_audit(event.reason, False, event.detail))
                reply = reply or f"Sorry, that didn't work ({event.reason})."
            else:
                continue
            yield reply, json.dumps(audit, indent=2)

def app(llm: Optional[Any] = None, provider: Optional[Any] = None):

    with gr.Blocks(title=APP_TITLE) as demo:
        gr.Markdown(f"# {APP_TITLE}")
        gr.Markdown(APP_DESC)

        with gr.Row():
            persona_dd = gr.Dropdown(
                label="Persona",
                choices=[p.value for p in Persona],
                value=DEFAULT_PERSONA.value,
                info="PA (friendly), Accountant (terse), Intern (eager)."
            )
            currency_dd = gr.Dropdown(
                label="Currency",
                choices=[c.value for c in Currency],
                value=DEFAULT_CURRENCY.value,
                info="USD default; also supports GBP and EUR."
            )
            role_dd = gr.Dropdown(
                label="Role",
                choices=ROLES,
                value="owner",
                info=f"{len(ACTION_MATRIX)} operations are role-gated."
            )

        cmd = gr.Textbox(
            label="Command",
            placeholder="e.g., create invoice for Acme for August retainer",
            lines=2
        )
        run = gr.Button("Run", variant="primary")
        out = gr.Markdown()
        log = gr.Code(label="Audit log", language="json")

        def on_run(command, persona, currency, role):
            yield from handle_command(command, persona, currency, role, llm, provider)

        run.click(
            fn=on_run,
            inputs=[cmd, persona_dd, currency_dd, role_dd],
            outputs=[out, log]
        )

    return demo


if __name__ == "__main__":

    configure_logging()
    app().launch()

# EOF
