"""Tests for the package logger setup."""

import logging
import os
import tempfile

import chex

from prismslice import setup_logging


class TestSetupLogging(chex.TestCase):
    def tearDown(self):
        logger = logging.getLogger("prismslice")
        for handler in list(logger.handlers):
            handler.close()
        logger.handlers.clear()
        logger.setLevel(logging.NOTSET)
        super().tearDown()

    def test_console_handler(self):
        setup_logging(logging.DEBUG)
        logger = logging.getLogger("prismslice")
        self.assertEqual(logger.level, logging.DEBUG)
        self.assertLen(logger.handlers, 1)
        self.assertIsInstance(logger.handlers[0], logging.StreamHandler)

    def test_repeated_setup_replaces_handlers(self):
        setup_logging()
        setup_logging()
        self.assertLen(logging.getLogger("prismslice").handlers, 1)

    def test_file_handler_receives_module_logs(self):
        with tempfile.NamedTemporaryFile(suffix=".log", delete=False) as f:
            log_path = f.name
        self.addCleanup(os.unlink, log_path)
        setup_logging(logging.INFO, log_file=log_path)
        logger = logging.getLogger("prismslice")
        self.assertLen(logger.handlers, 2)
        logging.getLogger("prismslice.simul.smatrix").info("propagating beams")
        for handler in logger.handlers:
            handler.flush()
        with open(log_path, encoding="utf-8") as handle:
            contents = handle.read()
        self.assertIn("Logging initialized.", contents)
        self.assertIn("prismslice.simul.smatrix - INFO - propagating beams", contents)
