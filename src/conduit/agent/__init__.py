"""Agent module: the streaming conversational loop.

This subpackage contains:
- core.py: Agent orchestration (stream consumption, tool folding)
- backend.py: ChatBackend protocol and the Anthropic adapter
- config.py: Configuration via pydantic-settings
- models.py: Stream event and option models
- prompts.py: System prompt
- tools/: Domain tools (weather)
"""
