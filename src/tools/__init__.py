"""Command line tooling around the build orchestrator."""
