"""
Contracts Module

Immutable records shared by every layer of the scenario tree engine.

DESIGN PRINCIPLES:
==================
1. All contract types are immutable (frozen dataclasses)
2. Identity is either assigned once (ids) or derived from content (hashes)
3. All timestamps are UTC
4. Errors are data: every rejection maps to one ErrorCode
"""
