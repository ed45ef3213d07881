from __future__ import annotations

import importlib
import unittest


class ImportsBootTestCase(unittest.TestCase):
    def test_import_create_app(self):
        module = importlib.import_module("orderflow")
        create_app = getattr(module, "create_app", None)
        self.assertTrue(callable(create_app))

    def test_import_main_app(self):
        module = importlib.import_module("main")
        app = getattr(module, "app", None)
        self.assertIsNotNone(app)

    def test_import_driver_orders_segment(self):
        module = importlib.import_module("orderflow.segments.segment_driver_orders")
        self.assertIsNotNone(getattr(module, "driver_orders_bp", None))

    def test_import_celery_factory(self):
        module = importlib.import_module("orderflow.celery_app")
        self.assertTrue(callable(getattr(module, "create_celery_app", None)))


if __name__ == "__main__":
    unittest.main()
