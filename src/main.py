"""Terminal chat client for the virtual agent with live-agent handover.

A development harness over :class:`~src.orchestrator.ChatOrchestrator`:
messages typed here go to the virtual agent, and after a confirmed
escalation to the Amazon Connect agent.

Usage:
    python -m src.main            # normal mode (quiet)
    python -m src.main --debug    # debug mode (shows HTTP and WebSocket traffic)

Commands: ``agent`` asks for a human, ``quit`` exits.  The escalation
prompt is answered with ``y`` or ``n``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from src.config import CUSTOMER_ID, AIAgentConfig, ConnectChatConfig, require_env
from src.models import ChatMode, ParticipantRole
from src.orchestrator import ChatOrchestrator
from src.services.ai_client import AIAgentClient
from src.services.connect_client import ConnectChatClient
from src.store.reducer import ChatState
from src.store.store import Store

logger = logging.getLogger(__name__)

_SPEAKER_PREFIX = {
    ParticipantRole.VIRTUAL_AGENT: "Assistant",
    ParticipantRole.HUMAN_AGENT: None,
    ParticipantRole.SYSTEM: ">>",
}


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    if not debug:
        for name in ("httpx", "httpcore", "websockets"):
            logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("src").setLevel(logging.DEBUG if debug else logging.INFO)


async def _print_updates(store: Store) -> None:
    """Echo new transcript entries and banners as the state changes."""
    seen: set[str] = set()
    last_error: str | None = None
    agent_typing = False
    async for state in store.subscribe():
        for message in state.messages:
            if message.id in seen:
                continue
            seen.add(message.id)
            role = message.user.role
            if role == ParticipantRole.CUSTOMER:
                continue
            prefix = _SPEAKER_PREFIX.get(role) or message.user.name
            print(f"\n{prefix}: {message.text}\n")
        if state.error and state.error != last_error:
            print(f"\n[!] {state.error}\n")
        last_error = state.error
        if state.is_agent_typing and not agent_typing:
            name = state.agent_user.name if state.agent_user else "Agent"
            print(f"   ({name} is typing...)")
        agent_typing = state.is_agent_typing
        if state.suggested_replies and not state.is_ai_processing:
            print("   Suggestions: " + " | ".join(state.suggested_replies))


async def _ask_escalation(orchestrator: ChatOrchestrator, state: ChatState) -> None:
    reason = state.escalation_reason or "A human agent could better assist you with this request."
    answer = await asyncio.to_thread(input, f"\n{reason}\nTalk to a live agent? [y/n]: ")
    confirmed = answer.strip().lower() in ("y", "yes")
    if confirmed:
        print("\n>> Connecting you to an agent...\n")
    await orchestrator.respond_to_escalation(confirmed)


async def run(debug: bool = False) -> None:
    _configure_logging(debug=debug)
    try:
        auth_url = require_env("CONNECT_AUTH_API_URL")
    except OSError as exc:
        logger.warning("%s Live-agent handover will fail until it is set.", exc)
        auth_url = ""

    print("\n" + "=" * 60)
    print("  Virtual Agent - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'agent' for a live agent, 'quit' to exit.")
    print("=" * 60 + "\n")

    async with Store() as store:
        ai_client = AIAgentClient(AIAgentConfig())
        connect_client = ConnectChatClient(ConnectChatConfig())
        orchestrator = ChatOrchestrator(
            store, ai_client, connect_client, auth_url=auth_url, customer_id=CUSTOMER_ID,
        )
        printer = asyncio.create_task(_print_updates(store), name="cli-printer")
        try:
            await orchestrator.start()
            while True:
                try:
                    user_input = (await asyncio.to_thread(input, "You: ")).strip()
                except (KeyboardInterrupt, EOFError):
                    print("\n\nGoodbye!")
                    break

                if not user_input:
                    continue
                command = user_input.lower()
                if command in ("exit", "quit", "q"):
                    print("\nGoodbye!")
                    break
                if command == "agent":
                    await orchestrator.request_human_agent()
                elif not await orchestrator.submit_message(user_input):
                    print(">> Please wait, input is disabled right now.")

                state = store.state
                if state.show_escalation_dialog:
                    await _ask_escalation(orchestrator, state)
                if store.state.chat_mode == ChatMode.ENDED:
                    print("\nThe chat has ended. Goodbye!")
                    break
        finally:
            await orchestrator.aclose()
            await ai_client.aclose()
            await connect_client.aclose()
            await store.join()
            printer.cancel()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Virtual agent CLI with live-agent handover")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP and WebSocket traffic",
    )
    args = parser.parse_args()
    try:
        asyncio.run(run(debug=args.debug))
    except KeyboardInterrupt:
        print("\n\nGoodbye!")


if __name__ == "__main__":
    main()
