"""
AI orchestration services package.

Turns one user message into a validated answer:

- Deterministic agents analyze, classify and plan
- Models research, enhance, generate and reconcile
- Validators score the assembled answer and drive bounded re-research

Model access goes through the provider pool only; nothing here talks HTTP directly.
"""
