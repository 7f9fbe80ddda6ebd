# =============================================================================
# ISSUE TRIAGE SYSTEM - TRIAGE ENGINE PACKAGE
# =============================================================================
"""
Triage Engine Package

Resilient integration layer for AI-assisted GitHub issue triage. The
engine is responsible for:

1. Resolving GitHub credentials (environment, gh CLI, OS keyring, device flow)
2. Fetching issues and repository context through a TTL cache
3. Calling completion providers behind retry and circuit breakers
4. Validating untrusted model output before anything is written
5. Posting triage comments and labels after confirmation

Package Structure:
    - main.py: Command line entry point
    - config.py: YAML + environment configuration
    - engine/: Transport, error taxonomy, resilience, cache
    - github/: GitHub client, credential resolver, device flow
    - llm/: Completion providers, prompts, response validator
    - nodes/: Triage workflow

Usage:
    ```python
    from triage_engine.config import load_config
    from triage_engine.nodes import create_triage_context, triage_node

    ctx = await create_triage_context(load_config())
    outcome = await triage_node(ctx, "octocat/hello-world#42", dry_run=True)
    ```

Environment Variables:
    - GH_TOKEN / GITHUB_TOKEN: GitHub token (optional, see `issue-triage login`)
    - GEMINI_API_KEY, OPENROUTER_API_KEY, GROQ_API_KEY, CEREBRAS_API_KEY,
      ZENMUX_API_KEY: Provider API keys
    - TRIAGE_<SECTION>__<KEY>: Configuration overrides
"""

__version__ = "0.4.0"

__all__ = [
    "config",
    "engine",
    "github",
    "llm",
    "nodes",
]
