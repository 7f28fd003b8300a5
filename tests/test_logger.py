import json
import logging
import unittest

from app.core.logger import ColoredFormatter, JsonFormatter, PlainFormatter, RoundLogger


def make_record(msg="Debited 10.00", **extra):
    record = logging.LogRecord("cyber-dice.economy", logging.INFO, __file__, 1, msg, None, None)
    record.__dict__.update(extra)
    return record


class TestFormatters(unittest.TestCase):
    def test_json_includes_round_context(self):
        line = JsonFormatter().format(make_record(round_id="abc", user_id="u1"))
        data = json.loads(line)
        self.assertEqual(data["message"], "Debited 10.00")
        self.assertEqual(data["level"], "INFO")
        self.assertEqual(data["round_id"], "abc")
        self.assertEqual(data["user_id"], "u1")

    def test_plain_appends_context(self):
        line = PlainFormatter().format(make_record(round_id="abc"))
        self.assertIn("Debited 10.00", line)
        self.assertIn("round_id=abc", line)

    def test_colored_without_context(self):
        line = ColoredFormatter().format(make_record())
        self.assertIn("Debited 10.00", line)
        self.assertNotIn("[", line.split("Debited 10.00")[1])


class TestRoundLogger(unittest.TestCase):
    def test_merges_extra(self):
        adapter = RoundLogger(logging.getLogger("test"), {"round_id": "r1", "user_id": "u1"})
        _, kwargs = adapter.process("msg", {"extra": {"step": "credit"}})
        self.assertEqual(kwargs["extra"], {"round_id": "r1", "user_id": "u1", "step": "credit"})


if __name__ == "__main__":
    unittest.main()
