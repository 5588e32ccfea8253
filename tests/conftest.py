"""Shared fixtures for specflow tests."""

import pytest
import pytest_asyncio


SIMPLE_DOC = """\
# Overview
A small todo service.

## Requirements
- Users can create a todo item.
- Users can mark a todo item as done.
- Users can list their todo items.
"""

CHAIN_DOC = """\
## Requirements
- [A] Build the data layer.
- [B] Build the service on top of [A].
- [C] Build the API over [B].
"""

CYCLE_DOC = """\
## Requirements
- [A] Task A depends on the result of [B].
- [B] Task B depends on the result of [A].
"""

FULL_DOC = """\
---
title: Accounts
---
# Accounts

## Overview
Account registration and login.

## Requirements
### Setup
- [R1] Create the storage schema; provides `schema`.
### Core
- [R2] Users can register with an email and password; uses `schema`. @input
- [R3] Registered users can log in and receive a session token.

## Edge Cases
- [E1] Registration with an empty email is rejected for [R2].

## Acceptance Criteria
- [A1] A newly registered user can log in for [R3].

## Non-goals
- Single sign-on.
"""


@pytest.fixture
def tmp_project(tmp_path):
    """Temporary project with .specflow/config.yaml."""
    config_dir = tmp_path / ".specflow"
    config_dir.mkdir()
    (config_dir / "config.yaml").write_text("""\
planning:
  grouping: requirement
  max_estimate: 8
  words_per_point: 25
notify:
  webhook_url: ""
  events:
    - task.failed
logging:
  level: warning
""")
    return tmp_path


@pytest.fixture
def simple_doc():
    return SIMPLE_DOC


@pytest.fixture
def chain_doc():
    return CHAIN_DOC


@pytest.fixture
def cycle_doc():
    return CYCLE_DOC


@pytest.fixture
def full_doc():
    return FULL_DOC


@pytest.fixture
def running():
    """Factory: document text → run already in the implementation phase."""
    from specflow.workflow import begin_implementation, plan_document

    def _make(text, run_id="run-test"):
        run = plan_document(text, run_id=run_id)
        begin_implementation(run)
        return run

    return _make


@pytest_asyncio.fixture
async def db(tmp_path):
    """Real SQLite file database (WAL mode)."""
    from specflow.db import Database
    db = Database(str(tmp_path / "test.db"))
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def memory_db():
    """In-memory database for fast unit tests."""
    from specflow.db import Database
    db = Database(":memory:")
    await db.init()
    yield db
    await db.close()
