"""Tests for webhook notifications."""

import json

import httpx as httpx_lib
import pytest
from specflow.models import TaskStatus
from specflow.notifier import Notifier
from specflow.workflow import claim_next_task, report_outcome


@pytest.mark.asyncio
async def test_sends_webhook(httpx_mock, chain_doc, running):
    """Sends correct webhook POST with task fields."""
    httpx_mock.add_response(status_code=200)
    run = running(chain_doc, run_id="r1")
    claim_next_task(run)
    task = report_outcome(run, "task-1", TaskStatus.FAILED, "tests red").task

    notifier = Notifier(webhook_url="https://hook.example.com/cb", events=["task.failed"])
    await notifier.notify("task.failed", run, task)
    await notifier.close()

    req = httpx_mock.get_request()
    body = json.loads(req.content)
    assert body["event"] == "task.failed"
    assert body["run_id"] == "r1"
    assert body["phase"] == "implementation"
    assert body["task_id"] == "task-1"
    assert body["status"] == "failed"
    assert body["reason"] == "tests red"


@pytest.mark.asyncio
async def test_run_event_without_task(httpx_mock, simple_doc, running):
    """Run-level events carry no task fields."""
    httpx_mock.add_response(status_code=200)
    run = running(simple_doc, run_id="r1")
    notifier = Notifier(webhook_url="https://hook.example.com/cb", events=["run.summary"])
    await notifier.notify("run.summary", run)
    await notifier.close()

    body = json.loads(httpx_mock.get_request().content)
    assert body == {"event": "run.summary", "run_id": "r1", "phase": "implementation"}


@pytest.mark.asyncio
async def test_filters_unsubscribed_events(simple_doc, running):
    """Events not in list → no request sent (no httpx_mock needed since no request)."""
    notifier = Notifier(webhook_url="https://hook.example.com/cb", events=["task.failed"])
    await notifier.notify("run.summary", running(simple_doc))
    await notifier.close()


@pytest.mark.asyncio
async def test_no_webhook_noop(simple_doc, running):
    """No webhook configured → silent noop."""
    notifier = Notifier(webhook_url="", events=["run.summary"])
    await notifier.notify("run.summary", running(simple_doc))
    await notifier.close()


@pytest.mark.asyncio
async def test_webhook_failure_silent(httpx_mock, simple_doc, running):
    """Webhook failure → no crash."""
    httpx_mock.add_exception(httpx_lib.ConnectError("unreachable"))
    notifier = Notifier(webhook_url="https://hook.example.com/cb", events=["run.summary"])
    await notifier.notify("run.summary", running(simple_doc))
    await notifier.close()
