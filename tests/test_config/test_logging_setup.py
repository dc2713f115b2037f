import pytest
import structlog

from taskpilot.config import Config, LoggingConfig, ModelConfig
from taskpilot.logging import MASK, SecretMasker, configure_logging, get_logger, set_log_sink


@pytest.fixture
def captured_lines():
    lines: list[str] = []
    set_log_sink(lines.append)
    yield lines
    set_log_sink(None)
    structlog.reset_defaults()


def test_masker_hides_configured_keys_and_credential_shapes():
    masker = SecretMasker(["AIzaSyExampleKey123", ""])

    assert masker.mask("using AIzaSyExampleKey123 now") == f"using {MASK} now"
    assert masker.mask("GET /v1beta/models/m:generateContent?key=abc123&alt=sse") == (
        f"GET /v1beta/models/m:generateContent?key={MASK}&alt=sse"
    )
    assert masker.mask("Authorization: Bearer sk-live.abc-123") == f"Authorization: Bearer {MASK}"
    assert masker.mask("{'x-api-key': 'sk-ant-123'}") == f"{{'x-api-key': '{MASK}'}}"
    assert masker.mask("monkey=banana") == "monkey=banana"


def test_masker_processor_only_touches_strings():
    masker = SecretMasker(["secret-token"])
    event = {"event": "call failed", "error": "bad secret-token", "status": 401}

    assert masker(None, "info", event) == {"event": "call failed", "error": f"bad {MASK}", "status": 401}


def test_configured_logger_writes_masked_json_lines_to_sink(captured_lines):
    config = Config(
        model=ModelConfig(api_keys=["sk-test-abcdef"]),
        logging=LoggingConfig(level="INFO", format="json"),
    )
    configure_logging(config=config)
    log = get_logger("taskpilot.test")

    log.debug("hidden")
    log.info("Request failed", error="401 for key sk-test-abcdef")

    assert len(captured_lines) == 1
    assert '"event": "Request failed"' in captured_lines[0]
    assert "sk-test-abcdef" not in captured_lines[0]
    assert MASK in captured_lines[0]


def test_level_argument_overrides_config(captured_lines):
    configure_logging("DEBUG", config=Config(logging=LoggingConfig(level="ERROR", format="json")))

    get_logger("taskpilot.test").debug("visible")

    assert any("visible" in line for line in captured_lines)


def test_log_file_output(tmp_path):
    path = tmp_path / "logs" / "taskpilot.log"
    configure_logging(config=Config(logging=LoggingConfig(format="json", file=str(path))))

    get_logger("taskpilot.test").warning("to file")
    structlog.reset_defaults()

    assert "to file" in path.read_text(encoding="utf-8")
