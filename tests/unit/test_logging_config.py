"""Unit tests for logging setup."""
import logging
from unittest.mock import patch

from json_translator.logging_config import LOGGER_NAME, TqdmLoggingHandler, setup_logger


class TestSetupLogger:

    def teardown_method(self):
        logger = logging.getLogger(LOGGER_NAME)
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()

    def test_file_and_console_handlers(self, tmp_path):
        log_file = tmp_path / "logs" / "run.log"

        logger = setup_logger("debug", str(log_file), True)
        logging.getLogger(f"{LOGGER_NAME}.pipeline").info("hello from a module")
        for handler in logger.handlers:
            handler.flush()

        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert {type(handler) for handler in logger.handlers} == {logging.FileHandler, TqdmLoggingHandler}
        assert "json_translator.pipeline - INFO - hello from a module" in log_file.read_text(encoding="utf-8")

    def test_reconfiguring_does_not_duplicate_handlers(self, tmp_path):
        setup_logger("INFO", str(tmp_path / "a.log"), True)
        logger = setup_logger("WARNING", None, True)

        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING

    def test_unknown_level_defaults_to_info(self):
        assert setup_logger("chatty", None, False).level == logging.INFO

    @patch("json_translator.logging_config.tqdm.write")
    def test_tqdm_handler_writes_through_tqdm(self, mock_write):
        handler = TqdmLoggingHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))

        handler.emit(logging.LogRecord("x", logging.INFO, __file__, 1, "progress-safe", None, None))

        assert mock_write.call_args.args[0] == "progress-safe"
