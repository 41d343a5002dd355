"""Connect Handover Chat — a virtual-agent chat client that escalates to Amazon Connect.

Architecture Overview
=====================

A conversation starts with an LLM-backed **virtual agent** and can be handed
over to a **human agent** in an Amazon Connect contact center:

1. **Store** — one immutable ``ChatState`` per conversation, evolved only by
   a pure reducer.  Actions are queued and applied by a single consumer task,
   so producers (user input, AI stream, WebSocket frames, timers) never race.

2. **AI client** — streams the virtual agent's reply from an LLM proxy over
   SSE.  The primary provider (Claude) fails over once to the fallback
   (OpenAI).  In-band markers in the model output request escalation or
   offer quick replies; they are filtered out before the customer sees text.

3. **Connect client** — starts the contact, opens the participant WebSocket,
   keeps it alive with heartbeats and turns frames into typed events.

4. **Orchestrator** — routes customer input by chat mode and translates AI
   chunks and Connect events into store actions.

Chat modes: VIRTUAL_AGENT → CONNECTING_TO_AGENT → HUMAN_AGENT → ENDED, with a
failed handover returning to VIRTUAL_AGENT.

Key Design Decisions
--------------------
- **Pure reducer**: ids and timestamps ride on actions, so replaying the same
  actions always yields the same state.
- **Resilience**: one-step provider failover for the AI stream; exponential
  backoff for idempotent participant API calls; local summary and sentiment
  estimates when the proxy cannot provide them.
- **Observability**: per-call CloudWatch metrics, batched in-process.

Package Structure
-----------------
- ``src/config.py`` — Environment-driven constants and per-session config models
- ``src/models.py`` — Shared domain types (users, messages, modes, sessions)
- ``src/prompts.py`` — System prompt plus marker instructions
- ``src/orchestrator.py`` — Conversation routing
- ``src/main.py`` — CLI chat interface
- ``src/store/`` — Actions, reducer and the single-consumer store
- ``src/services/`` — AI proxy and Connect clients, SSE/marker parsing, metrics
"""
