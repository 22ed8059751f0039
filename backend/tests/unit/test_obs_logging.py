import json
import logging

from dancefeedback.obs.logging import JSONLogFormatter, bind_context, reset_context


def _record(**extra) -> logging.LogRecord:
	record = logging.LogRecord("dancefeedback.test", logging.INFO, __file__, 1, "moderation verdict applied", None, None)
	for key, value in extra.items():
		setattr(record, key, value)
	return record


def test_message_context_is_attached_and_reset() -> None:
	formatter = JSONLogFormatter()
	tokens = bind_context(target_type="Review", target_id=12, delivery_id="1700000000000-0")
	try:
		payload = json.loads(formatter.format(_record(level_applied="Red")))
	finally:
		reset_context(tokens)

	assert payload["target_type"] == "Review"
	assert payload["target_id"] == 12
	assert payload["delivery_id"] == "1700000000000-0"
	assert payload["level_applied"] == "Red"

	after = json.loads(formatter.format(_record()))
	assert "target_type" not in after
	assert "delivery_id" not in after


def test_review_text_is_redacted() -> None:
	payload = json.loads(JSONLogFormatter().format(_record(text_review="you are awful", raw_body="{}")))

	assert payload["text_review"] == "[redacted]"
	assert payload["raw_body"] == "[redacted]"
