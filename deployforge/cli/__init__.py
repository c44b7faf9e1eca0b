"""Deployforge CLI — Typer-based command-line interface.

Provides the ``deployforge`` command with subcommands for validating and
registering pipeline definitions, inspecting executions and their ledger,
deciding judgment gates, monitoring executions, and running a demo.

All output uses Rich for formatted terminal display.
"""
