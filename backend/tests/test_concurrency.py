import os
import tempfile
import threading
import unittest

from csms import create_app
from csms.errors import InsufficientStockError
from csms.extensions import GATEWAY_EXTENSION_KEY, db
from csms.models import Customer, InventoryTransaction, Order, Product
from csms.schemas import OrderLineRequest
from csms.services import build_services

from .conftest import FakeStripeGateway


class ConcurrentOrderTests(unittest.TestCase):
    """
    Two buyers race for the last units of one product on a file database,
    so each thread really has its own connection.
    """

    @classmethod
    def setUpClass(cls):
        fd, cls.db_path = tempfile.mkstemp(suffix=".sqlite3")
        os.close(fd)
        cls.app = create_app(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{cls.db_path}",
                "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"check_same_thread": False, "timeout": 30}},
                "LOG_LEVEL": "WARNING",
            },
            gateway=FakeStripeGateway(),
        )
        with cls.app.app_context():
            db.create_all()

    @classmethod
    def tearDownClass(cls):
        with cls.app.app_context():
            db.session.remove()
            db.drop_all()
            db.engine.dispose()
        os.remove(cls.db_path)

    def setUp(self):
        with self.app.app_context():
            for table in reversed(db.metadata.sorted_tables):
                db.session.execute(table.delete())
            db.session.commit()

            services = self._services()
            self.product_id = services.products.create_product(
                {"sku": "CEM-RACE-1", "name": "Race Cement", "unit_price_cents": 2550, "stock_quantity": 10}
            ).id
            # Pre-created so both threads resolve the same row
            db.session.add(Customer(external_ref="idp|race", email="race@example.com"))
            db.session.commit()

    def _services(self):
        return build_services(db.session, self.app.extensions[GATEWAY_EXTENSION_KEY], self.app.config)

    def _race(self, quantities):
        barrier = threading.Barrier(len(quantities))
        results = []
        lock = threading.Lock()

        def worker(quantity):
            with self.app.app_context():
                services = self._services()
                barrier.wait()
                try:
                    order = services.orders.place_order(
                        items=[OrderLineRequest(product_id=self.product_id, quantity=quantity)],
                        customer_ref="idp|race",
                    )
                    outcome = ("ok", order.order_number)
                except InsufficientStockError as exc:
                    outcome = ("insufficient", exc.details)
                except Exception as exc:  # surfaced through the assertion below
                    outcome = ("error", repr(exc))
                finally:
                    db.session.remove()
                with lock:
                    results.append(outcome)

        threads = [threading.Thread(target=worker, args=(q,)) for q in quantities]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)
        return results

    def test_only_one_order_gets_the_last_units(self):
        results = self._race([6, 6])

        kinds = sorted(kind for kind, _ in results)
        self.assertEqual(kinds, ["insufficient", "ok"], results)

        (details,) = [d for kind, d in results if kind == "insufficient"]
        self.assertEqual(details["available"], 4)
        self.assertEqual(details["requested"], 6)

        with self.app.app_context():
            self.assertEqual(db.session.get(Product, self.product_id).stock_quantity, 4)
            self.assertEqual(db.session.query(Order).count(), 1)
            outbound = db.session.query(InventoryTransaction).filter_by(type="OUTBOUND").all()
            self.assertEqual([(tx.before_quantity, tx.after_quantity) for tx in outbound], [(10, 4)])

    def test_concurrent_orders_that_fit_both_succeed(self):
        results = self._race([4, 5])

        self.assertEqual(sorted(kind for kind, _ in results), ["ok", "ok"], results)
        numbers = sorted(number for _, number in results)
        self.assertEqual(len(set(numbers)), 2)

        with self.app.app_context():
            self.assertEqual(db.session.get(Product, self.product_id).stock_quantity, 1)


if __name__ == "__main__":
    unittest.main()
