# =============================================================================
# ISSUE TRIAGE SYSTEM - TEST PACKAGE
# =============================================================================
"""
Test Package

Test Structure:
    tests/
    ├── __init__.py              # This file
    ├── conftest.py              # Shared fixtures
    ├── fakes.py                 # Transport, clock, sleep and keyring doubles
    ├── test_resilience.py       # Retry, backoff, circuit breaker
    ├── test_cache.py            # TTL cache
    ├── test_auth.py             # Credential resolver
    ├── test_device_flow.py      # OAuth device flow state machine
    ├── test_transport.py        # Status classification, Retry-After
    ├── test_errors.py           # Error taxonomy, user messages
    ├── test_github_client.py    # GitHub client
    ├── test_providers.py        # Completion providers
    ├── test_prompts.py          # Prompt building
    ├── test_validator.py        # Response validator
    ├── test_triage_node.py      # Triage workflow
    ├── test_config.py           # Configuration loading
    ├── test_main.py             # Command line entry point
    └── test_monitoring.py       # Logging, audit and metrics

Running Tests:
    # Run all tests
    pytest tests/ -v

    # Run specific test file
    pytest tests/test_resilience.py -v

    # Run with coverage
    pytest tests/ --cov=triage_engine --cov=monitoring

Test Categories:
    - Unit tests: Components in isolation against fakes
    - Workflow tests: Triage node end to end over a scripted transport
"""
