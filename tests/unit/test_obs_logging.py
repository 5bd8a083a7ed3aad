import json
import logging

from trustlayer.obs.logging import JSONLogFormatter, bind_context, redact, reset_context


def _format(**extra):
    record = logging.makeLogRecord({"name": "trustlayer.test", "levelno": logging.INFO, "levelname": "INFO", "msg": "antispam_hold"})
    record.__dict__.update(extra)
    return json.loads(JSONLogFormatter().format(record))


def test_submission_text_is_redacted_but_related_fields_are_kept():
    payload = _format(content="buy now", title="Casino", content_type="topic", author_did="did:plc:bob")

    assert payload["content"] == "[redacted]"
    assert payload["title"] == "[redacted]"
    assert payload["content_type"] == "topic"
    assert payload["author_did"] == "did:plc:bob"


def test_credential_like_fields_are_redacted():
    payload = _format(api_token="abc", authorization_header="Bearer x")

    assert payload["api_token"] == "[redacted]"
    assert payload["authorization_header"] == "[redacted]"


def test_long_values_are_truncated():
    assert redact("note", "x" * 300) == "x" * 256 + "…"
    members = [f"did:plc:{i}" for i in range(25)]
    assert redact("member_dids", members) == members[:20] + ["+5 more"]


def test_bound_context_appears_until_reset():
    token = bind_context(request_id="req-1", actor_did="did:plc:mod", route=None)
    try:
        payload = _format()
    finally:
        reset_context(token)

    assert payload["request_id"] == "req-1"
    assert payload["actor_did"] == "did:plc:mod"
    assert "route" not in payload
    assert "request_id" not in _format()
