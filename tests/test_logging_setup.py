import logging

from treasury_service import logging_setup


def test_setup_logging_with_rotating_file(tmp_path):
    log_file = tmp_path / "logs" / "treasury.log"
    previous_level = logging_setup.logger.level
    try:
        logger = logging_setup.setup_logging("debug", log_file=str(log_file))
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2

        logging.getLogger("treasury_service.intent_store").info("intent %s approved", "abc")
        for handler in logger.handlers:
            handler.flush()
        text = log_file.read_text()
        assert "Logging initialized" in text
        assert "INFO treasury_service.intent_store: intent abc approved" in text
    finally:
        logging_setup.close_logging()
        logging_setup.logger.handlers = []
        logging_setup.logger.setLevel(previous_level)
    assert logging_setup.file_handler is None


def test_setup_logging_stream_only():
    try:
        logger = logging_setup.setup_logging("INFO")
        assert [type(h) for h in logger.handlers] == [logging.StreamHandler]
        assert logging_setup.file_handler is None
    finally:
        logging_setup.logger.handlers = []
        logging_setup.logger.setLevel(logging.NOTSET)
