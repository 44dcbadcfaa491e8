"""Environment harness for running the agent and serving tools.

Structure:
- cli/__main__.py: typer entry points (chat, serve)
"""
