"""Bet lifecycle: outcome policy, retry policy and the orchestrator."""
