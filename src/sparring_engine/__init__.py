"""
Sparring engine: a tunable, human-like chess opponent on top of a UCI engine.

Components:
- protocol: UCI session with the search engine (handshake, options, searches, cancel)
- skill_model: rating → skill level, and deliberate human-like mistakes
- annotator: move-quality classification and training log entries
- timing: human-like thinking delay
- orchestrator: the public request/response contract (EngineOrchestrator)
- rules/training: referee around python-chess and the human vs. engine game glue
"""
# Package exports are intentionally minimal; import modules directly as needed.
