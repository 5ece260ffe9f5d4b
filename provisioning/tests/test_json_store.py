import json
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from provisioning.models.records import InstallationRequest, SectorialNode, Technician
from provisioning.store.json_store import JsonRecordStore


class TestJsonRecordStore(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        self.store = JsonRecordStore(self.base)

    def tearDown(self):
        self._tmp.cleanup()

    def test_requests_accept_camel_case_files(self):
        rows = [{"id": 3, "firstName": "Ana", "lastName": "Torres", "agreedInstallationDate": None,
                 "createdAt": "2026-10-01T09:30:00"}]
        (self.base / "installation_requests.json").write_text(json.dumps(rows), encoding="utf-8")
        request = self.store.get_request(3)
        self.assertEqual(request.full_name, "Ana Torres")
        self.assertIsNone(self.store.get_request(4))

    def test_update_request(self):
        self.store.add_request(InstallationRequest(id=1, first_name="Ana"))
        updated = self.store.update_request(1, {"agreed_installation_date": datetime(2026, 10, 20, 10, 0)})
        self.assertEqual(updated.agreed_installation_date, datetime(2026, 10, 20, 10, 0))

        saved = json.loads((self.base / "installation_requests.json").read_text(encoding="utf-8"))
        self.assertEqual(saved[0]["agreedInstallationDate"], "2026-10-20T10:00:00")
        with self.assertRaises(KeyError):
            self.store.update_request(99, {"comments": "x"})

    def test_technicians(self):
        first = self.store.add_technician(Technician(first_name="Carlos", email="Carlos@Geonet.cl"))
        second = self.store.add_technician(Technician(first_name="Pat"))
        self.assertEqual((first.id, second.id), (1, 2))
        self.assertEqual(self.store.find_technician_by_email("carlos@geonet.cl").id, 1)
        self.assertIsNone(self.store.find_technician_by_email("nadie@geonet.cl"))

    def test_sectorials(self):
        self.store.upsert_sectorial(SectorialNode(nombre="Norte", total_clientes=3))
        self.store.upsert_sectorial(SectorialNode(nombre="Sur"))
        self.store.upsert_sectorial(SectorialNode(nombre="Norte", total_clientes=5))
        nodes = self.store.list_sectorials()
        self.assertEqual([(n.id, n.nombre, n.total_clientes) for n in nodes], [(1, "Norte", 5), (2, "Sur", 0)])

        self.assertEqual(self.store.delete_sectorials_except(["Sur"]), 1)
        self.assertEqual([n.nombre for n in self.store.list_sectorials()], ["Sur"])
        self.assertEqual(self.store.delete_sectorials_except(["Sur"]), 0)


if __name__ == '__main__':
    unittest.main()
