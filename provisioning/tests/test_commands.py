import unittest
from datetime import datetime

from pydantic import ValidationError

from provisioning.models.commands import ActivationRequest, TicketRequest, TicketUpdate


class TestActivationRequest(unittest.TestCase):
    def test_aliases_and_blanks(self):
        request = ActivationRequest.model_validate({
            "nombreCliente": "Ana Torres",
            "tecnicoName": "Carlos",
            "planName": "  ",
            "zonaName": "Zona 201",
            "fechaInstalacion": "2026-10-20T10:00:00",
        })
        self.assertEqual(request.client_name, "Ana Torres")
        self.assertEqual(request.technician_name, "Carlos")
        self.assertIsNone(request.plan_name)
        self.assertEqual(request.zone_name, "Zona 201")
        self.assertEqual(request.agreed_installation_date, datetime(2026, 10, 20, 10, 0))

    def test_first_listed_alias_wins(self):
        request = ActivationRequest.model_validate({"technicianName": "Pat", "tecnicoName": "Carlos"})
        self.assertEqual(request.technician_name, "Pat")

    def test_technician_required(self):
        with self.assertRaises(ValidationError):
            ActivationRequest.model_validate({"clientName": "Ana Torres", "tecnico": " "})


class TestTicketRequest(unittest.TestCase):
    def test_form_update_defaults(self):
        command = TicketRequest.model_validate({"ticketCategoryId": 3, "tecnicoId": 12})
        self.assertEqual((command.category_id, command.technician_id), ("3", "12"))
        self.assertEqual(command.form_updates(), {
            "asunto": "Reinstalación de servicio",
            "departamento": "Otro",
            "descripcion": "Ticket automático",
            "estado": "1",
            "prioridad": "1",
        })

    def test_optional_fields_only_when_set(self):
        command = TicketRequest.model_validate({
            "categoryId": "3", "asunto": "Corte", "prioridad": 3,
            "asuntosDefault": "Falla", "fechaInicio": "20/10/2026 10:00",
        })
        updates = command.form_updates()
        self.assertEqual(updates["asunto"], "Corte")
        self.assertEqual(updates["prioridad"], "3")
        self.assertEqual(updates["asuntos_default"], "Falla")
        self.assertEqual(updates["fecha_inicio"], "20/10/2026 10:00")
        self.assertNotIn("fecha_final", updates)


class TestTicketUpdate(unittest.TestCase):
    def test_remote_fields_in_documented_order(self):
        update = TicketUpdate.model_validate({
            "tecnico": 7, "estado": 2, "asunto": " Corte ", "descripcion": "", "emailTecnico": "c@geonet.cl",
        })
        self.assertEqual(update.remote_fields(), [
            ("asunto", "Corte"),
            ("estado", "2"),
            ("email_tecnico", "c@geonet.cl"),
            ("tecnico", "7"),
        ])

    def test_technician_name_is_not_a_remote_field(self):
        update = TicketUpdate.model_validate({"tecnicoName": "Carlos Mendoza"})
        self.assertEqual(update.technician_name, "Carlos Mendoza")
        self.assertEqual(update.remote_fields(), [])


if __name__ == '__main__':
    unittest.main()
