import json

import structlog

from cot_proxy.logging import configure_logging, truncate_value


def test_truncate_value_reports_dropped_length():
    assert truncate_value("abcdef", 4) == "abcd...[2 more chars]"
    assert truncate_value("abc", 4) == "abc"
    assert truncate_value("abcdef", 0) == "abcdef"


def test_configured_logger_redacts_secrets_and_truncates(capsys):
    configure_logging(level="INFO", fmt="json", secrets=["sk-secret-123"], max_field_chars=16)
    structlog.get_logger("test").info("cot_request", key="Bearer sk-secret-123", cot="x" * 40)

    line = capsys.readouterr().out.strip().splitlines()[-1]
    event = json.loads(line)
    assert "sk-secret-123" not in line
    assert event["cot"].startswith("x" * 16)
    assert event["cot"].endswith("[24 more chars]")
    assert event["event"] == "cot_request"


def test_redactor_masks_credential_fields_but_keeps_counts():
    from cot_proxy.logging import SecretRedactor

    out = SecretRedactor(["sk-1"])(
        None,
        "info",
        {"event": "x", "mistral_api_key": "whatever", "max_tokens": 12, "headers": {"Authorization": "abc"}},
    )
    assert out["mistral_api_key"] == "[REDACTED]"
    assert out["max_tokens"] == 12
    assert out["headers"] == {"Authorization": "[REDACTED]"}
