"""
Multi-persona roundtable conversation engine.

Modules:
- agents: PersonaAgent with derailer / proactive settings and reply generation
- manager: ConversationManager turn loop + impromptu phase state machine
- session: ConversationSession control surface (start, approve, reject, ...)
- parties: PartyRegistry partition + per-party speaking config
- turns: pure turn-selection helpers
- backchannel: interruption / back-channel rules and concurrent fan-out
- memory: rolling summaries, covered points and analogies
- prompts: context blocks fed to persona prompts
- content: shared document ownership and visibility
- config: ConversationConfig parsed from the session payload
- states / messages / errors: data model and error taxonomy
- llm: minimal OpenAI chat client via LangChain
"""
