"""Inbound email normalization, filtering, threading and calendar extraction."""

import asyncio
import json
import time

from opsagent.events.bus import EventBus
from opsagent.inputs.base import InboundRequest, detect_priority
from opsagent.inputs.inbound_email import EmailHandler, clean_body, parse_ics
from opsagent.inputs.signatures import sign_payload
from opsagent.rate_limit import FixedWindowRateLimiter

ICS = "\r\n".join(
    [
        "BEGIN:VCALENDAR",
        "METHOD:REQUEST",
        "BEGIN:VEVENT",
        "UID:abc-123",
        "SUMMARY:Kickoff call",
        "DTSTART:20300105T150000Z",
        "DTEND:20300105T160000Z",
        "LOCATION:Zoom",
        "ORGANIZER:mailto:jane@client.com",
        "ATTENDEE;CN=Bob:mailto:bob@client.com",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
)


def _request(payload, secret=None, headers=None):
    body = json.dumps(payload).encode("utf-8")
    all_headers = dict(headers or {})
    if secret:
        ts = str(int(time.time()))
        all_headers["X-Webhook-Timestamp"] = ts
        all_headers["X-Webhook-Signature"] = sign_payload(secret, body, ts)
    return InboundRequest(body=body, headers=all_headers, endpoint="email")


def _collect(bus):
    seen = []
    bus.subscribe("email.received", seen.append)
    return seen


def test_urgent_email_is_prioritized_and_published_once():
    bus = EventBus()
    seen = _collect(bus)
    handler = EmailHandler(bus, "org-1", secret="mail-secret")
    payload = {
        "from": "Jane Doe <jane@client.com>",
        "to": "ops@acme.test",
        "subject": "URGENT: server down",
        "text": "Our portal returns 500 for every user.\n\n-- \nJane\nACME Corp",
        "messageId": "<m1@client.com>",
    }

    result = asyncio.run(handler.handle_input(_request(payload, secret="mail-secret")))

    assert result.success is True
    assert result.event_emitted is True
    assert len(seen) == 1
    agent_input = result.input
    assert agent_input.priority >= 4
    assert agent_input.type == "new_inquiry"
    assert agent_input.contact_info.email == "jane@client.com"
    assert agent_input.contact_info.name == "Jane Doe"
    assert "ACME Corp" not in agent_input.raw_content
    assert seen[0].payload["input"]["id"] == agent_input.id


def test_bad_signature_is_rejected_without_emitting():
    bus = EventBus()
    seen = _collect(bus)
    handler = EmailHandler(bus, "org-1", secret="mail-secret")
    payload = {"from": "a@b.com", "to": "ops@acme.test", "subject": "hi", "text": "hello"}

    result = asyncio.run(handler.handle_input(_request(payload, secret="other-secret")))

    assert result.success is False
    assert result.error_code == "INVALID_SIGNATURE"
    assert result.error_type == "AuthenticationError"
    assert seen == []


def test_spam_and_auto_replies_are_skipped():
    bus = EventBus()
    seen = _collect(bus)
    handler = EmailHandler(bus, "org-1", secret="")
    spam = {
        "from": "winner123456@prizes.xyz",
        "to": "ops@acme.test",
        "subject": "Congratulations winner! Claim your prize",
        "text": "Click here now for free money",
    }
    auto = {
        "from": "bob@client.com",
        "to": "ops@acme.test",
        "subject": "Out of office",
        "text": "I am away until Monday.",
    }

    spam_result = asyncio.run(handler.handle_input(_request(spam)))
    auto_result = asyncio.run(handler.handle_input(_request(auto)))

    assert spam_result.success is True and spam_result.skipped_reason.startswith("spam")
    assert auto_result.skipped_reason == "auto-reply"
    assert seen == []
    assert handler.get_stats()["skipped"] == 2


def test_reply_joins_original_thread():
    bus = EventBus()
    handler = EmailHandler(bus, "org-1", secret="")
    first = {
        "from": "jane@client.com",
        "to": "ops@acme.test",
        "subject": "Pricing question",
        "text": "What does the pro plan cost?",
        "messageId": "<orig@client.com>",
    }
    reply = {
        "from": "jane@client.com",
        "to": "ops@acme.test",
        "subject": "Re: Pricing question",
        "text": "Following up.\n\nOn Mon, Jan 1, 2030 at 9:00 AM Ops wrote:\n> earlier text",
        "inReplyTo": "<ORIG@client.com>",
    }

    original = asyncio.run(handler.handle_input(_request(first)))
    followup = asyncio.run(handler.handle_input(_request(reply)))

    assert followup.input.correlation_id == original.input.correlation_id
    assert followup.input.type == "reply"
    assert followup.input.metadata["thread_correlation_id"] == original.input.correlation_id
    assert "earlier text" not in followup.input.raw_content


def test_ics_attachment_becomes_event_proposal():
    bus = EventBus()
    handler = EmailHandler(bus, "org-1", secret="")
    payload = {
        "from": "jane@client.com",
        "to": "ops@acme.test",
        "subject": "Invitation: Kickoff call",
        "html": "<p>Please join the <b>kickoff</b>.</p>",
        "attachments": [{"filename": "invite.ics", "contentType": "text/calendar", "content": ICS}],
    }

    result = asyncio.run(handler.handle_input(_request(payload)))

    proposal = result.input.metadata["event_proposal"]
    assert proposal["summary"] == "Kickoff call"
    assert proposal["start"] == "2030-01-05T15:00:00+00:00"
    assert proposal["attendees"] == ["bob@client.com"]
    assert "kickoff" in result.input.raw_content


def test_sender_domain_rate_limit():
    bus = EventBus()
    handler = EmailHandler(bus, "org-1", secret="", domain_limiter=FixedWindowRateLimiter(1, 60))
    payload = {"from": "a@flood.com", "to": "ops@acme.test", "subject": "one", "text": "hello"}

    first = asyncio.run(handler.handle_input(_request(payload)))
    second = asyncio.run(handler.handle_input(_request({**payload, "subject": "two"})))

    assert first.success is True
    assert second.success is False
    assert second.error_code == "QUOTA_EXCEEDED"


def test_invalid_payload_reports_field_errors():
    bus = EventBus()
    handler = EmailHandler(bus, "org-1", secret="")

    result = asyncio.run(handler.handle_input(_request({"from": "not an address", "to": "x@y.com"})))

    assert result.success is False
    assert result.error_code == "VALIDATION_ERROR"
    assert "from" in result.field_errors


def test_parse_ics_and_body_helpers():
    assert parse_ics("BEGIN:VCALENDAR\nEND:VCALENDAR") is None
    assert clean_body("Thanks!\nSent from my iPhone") == "Thanks!"
    assert detect_priority({"X-Priority": "1"}, "hello") == 5
    assert detect_priority({"Importance": "low"}, "hello") == 3
