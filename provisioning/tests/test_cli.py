import io
import json
import unittest
from contextlib import redirect_stdout
from unittest.mock import patch

import requests

from provisioning import cli
from provisioning.base.errors import NotFoundError, PreconditionError
from provisioning.models.config import Settings
from provisioning.models.ticketing import TicketMatch, TicketSearchResult
from provisioning.portals.geonet.sync import SyncReport


class TestHelpers(unittest.TestCase):
    def test_parse_assignments(self):
        self.assertEqual(cli.parse_assignments(["estado=2", " asunto =Corte=fibra"]),
                         {"estado": "2", "asunto": "Corte=fibra"})
        self.assertEqual(cli.parse_assignments(None), {})
        with self.assertRaises(PreconditionError) as ctx:
            cli.parse_assignments(["estado"])
        self.assertEqual(ctx.exception.reason, "bad_assignment")

    def test_to_jsonable(self):
        result = TicketSearchResult(id_ticket="12", matches=[TicketMatch(id_ticket="12", servicio_nombre="Ana")])
        self.assertEqual(cli.to_jsonable(result)["matches"][0]["servicio_nombre"], "Ana")
        self.assertEqual(cli.to_jsonable(SyncReport(added=2)),
                         {"added": 2, "details": [], "updated": 0, "removed": 0})
        self.assertEqual(cli.to_jsonable({"a": 1}), {"a": 1})

    def test_parser_dispatch(self):
        parser = cli.build_parser()
        args = parser.parse_args(["edit-installation", "77_ana", "301", "--set", "ip=10.0.0.9", "--set", "zona=Norte"])
        self.assertIs(args.portal, cli._edit_installation)
        self.assertEqual(args.set, ["ip=10.0.0.9", "zona=Norte"])

        args = parser.parse_args(["search-remote-ticket", "Ana Torres", "--max-pages", "3"])
        self.assertIs(args.api, cli._search_remote_ticket)
        self.assertEqual(args.max_pages, 3)
        self.assertIsNone(getattr(args, "portal", None))

        args = parser.parse_args(["list-odb-ports", "ODB-7"])
        self.assertIs(args.olt, cli._list_odb_ports)
        self.assertEqual(args.external_id, "ODB-7")
        self.assertIsNone(getattr(args, "api", None))

    def test_olt_commands_use_the_olt_client(self):
        args = cli.build_parser().parse_args(["list-odb-ports", "ODB-7"])
        settings = Settings.model_validate({"olt": {"api_url": "https://isp.smartolt.test", "api_key": "k"}})
        with patch.object(cli, "SmartoltClient") as client_cls:
            client_cls.return_value.available_ports.return_value = "ports"
            self.assertEqual(cli.run(args, settings), "ports")
        client_cls.assert_called_once_with(settings.olt)
        client_cls.return_value.available_ports.assert_called_once_with("ODB-7")


class TestMain(unittest.TestCase):
    def _main(self, argv, run):
        out = io.StringIO()
        with patch.object(cli, "load_settings", return_value=Settings()), \
                patch.object(cli, "run", side_effect=run), redirect_stdout(out):
            code = cli.main(argv)
        return code, out.getvalue()

    def test_success_prints_json(self):
        code, out = self._main(["delete-ticket", "4411"], lambda args, settings: {"ticket_id": args.ticket_id})
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out), {"ticket_id": "4411"})

    def test_workflow_error_exit_code(self):
        def fail(args, settings):
            raise NotFoundError("No pending pre-installation row", reason="preinstall_row_not_found")

        with self.assertLogs("cli", level="ERROR"):
            code, out = self._main(["activate", "--technician", "Carlos", "--client-name", "Ana"], fail)
        self.assertEqual(code, 1)
        payload = json.loads(out)
        self.assertEqual((payload["kind"], payload["reason"]), ("not_found", "preinstall_row_not_found"))

    def test_invalid_input_exit_code(self):
        def build(args, settings):
            return cli.ActivationRequest.model_validate({"tecnico": " "})

        code, out = self._main(["activate", "--technician", " "], build)
        self.assertEqual(code, 1)
        self.assertEqual(json.loads(out)["reason"], "invalid_input")

    def test_transport_exception_exit_code(self):
        def fail(args, settings):
            raise requests.ConnectionError("refused")

        code, out = self._main(["list-staff"], fail)
        self.assertEqual(code, 1)
        self.assertEqual(json.loads(out)["kind"], "transport")


if __name__ == '__main__':
    unittest.main()
