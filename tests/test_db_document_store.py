import os
import sys
import unittest
import uuid


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
DB_URL = os.getenv("DATABASE_URL")


@unittest.skipUnless(USE_DB and DB_URL, "USE_DB=1 and DATABASE_URL required")
class TestDbDocumentStore(unittest.TestCase):
    def setUp(self) -> None:
        from app.stores_db import DbDocumentStore

        self.store = DbDocumentStore()
        self.store.ensure_schema()
        self.collection = f"test_{uuid.uuid4().hex[:8]}"

    def test_create_get_update_delete(self) -> None:
        doc = self.store.create(self.collection, {"title": "a", "tags": [1, 2]})
        fetched = self.store.get(self.collection, doc.id)
        self.assertEqual(fetched.data, {"title": "a", "tags": [1, 2]})
        self.assertEqual(fetched.created_at, fetched.updated_at)
        updated = self.store.update(self.collection, doc.id, {"title": "b"})
        self.assertEqual(updated.data, {"title": "b"})
        self.assertEqual(updated.created_at, doc.created_at)
        self.assertGreater(updated.updated_at, doc.updated_at)
        self.assertIsNone(self.store.update(self.collection, str(uuid.uuid4()), {}))
        self.assertTrue(self.store.delete(self.collection, doc.id))
        self.assertFalse(self.store.delete(self.collection, doc.id))

    def test_list_order_and_count(self) -> None:
        ids = [self.store.create(self.collection, {"n": n}).id for n in range(4)]
        page = self.store.list(self.collection, limit=2, offset=1)
        self.assertEqual(page.count, 4)
        self.assertEqual([doc.id for doc in page.documents], [ids[2], ids[1]])
        self.assertIn(self.collection, self.store.list_collections())

    def test_raw_query(self) -> None:
        from appstore.documents import QueryRejected

        self.store.create(self.collection, {"n": 1})
        rows = self.store.raw_query(f"select collection, 1 as one, 2.5::float8 as half, true as flag, null as nothing from documents where collection = '{self.collection}'")
        self.assertEqual(rows, [{"collection": self.collection, "one": 1, "half": 2.5, "flag": True, "nothing": None}])
        with self.assertRaises(QueryRejected):
            self.store.raw_query("DROP TABLE documents")
        with self.assertRaises(QueryRejected) as ctx:
            self.store.raw_query("select * from no_such_table")
        self.assertEqual(ctx.exception.reason, "invalid_sql")
        with self.assertRaises(QueryRejected) as ctx:
            self.store.raw_query("select 1; commit; delete from documents")
        self.assertEqual(ctx.exception.reason, "multiple_statements")
        self.assertEqual(self.store.list(self.collection).count, 1)


if __name__ == "__main__":
    unittest.main()
