import unittest
from datetime import datetime

from provisioning.processors.normalize import (
    extract_email,
    extract_numeric_tokens,
    extract_scope_letters,
    extract_tower_letter,
    format_portal_datetime,
    normalize,
    normalize_identifier,
    normalize_key,
    strict_name,
)


class TestNormalize(unittest.TestCase):
    def test_accents_case_and_spacing(self):
        self.assertEqual(normalize("  CTO1 -  Zóna 204 "), "cto1 - zona 204")

    def test_variants_collapse_to_same_form(self):
        variants = ["José  Pérez", "jose perez", "JOSÉ PEREZ", "\tJose\nPérez "]
        self.assertEqual(len({normalize(v) for v in variants}), 1)

    def test_empty_values(self):
        self.assertEqual(normalize(None), "")
        self.assertEqual(normalize(""), "")

    def test_normalize_key_drops_separators(self):
        self.assertEqual(normalize_key("Cliente-Técnico"), "clientetecnico")
        self.assertEqual(normalize_key("fecha_instalacion"), normalize_key("fechaInstalacion"))


class TestExtractors(unittest.TestCase):
    def test_numeric_tokens(self):
        self.assertEqual(extract_numeric_tokens("CTO 12 - Zona 204"), ["12", "204"])
        self.assertEqual(extract_numeric_tokens(None), [])

    def test_tower_letter(self):
        self.assertEqual(extract_tower_letter("Edificio Mirador Torre B"), "b")
        self.assertEqual(extract_tower_letter("Tower: C"), "c")
        self.assertEqual(extract_tower_letter("Centro"), "")

    def test_email(self):
        self.assertEqual(extract_email("Carlos <CARLOS@Geonet.cl>"), "carlos@geonet.cl")
        self.assertEqual(extract_email("sin correo"), "")

    def test_identifier(self):
        self.assertEqual(normalize_identifier("12.345.678-k"), "12345678-K")
        self.assertEqual(normalize_identifier(" 9.876.543-2 "), "9876543-2")

    def test_strict_name_strips_network_markers(self):
        self.assertEqual(strict_name("Villa Maule - Zona 201 - Vlan 201"), "villa maule")
        self.assertEqual(strict_name("CTO 3 - Las Brisas"), "brisas")

    def test_scope_letters(self):
        self.assertEqual(extract_scope_letters("Condominio Torre A y B"), ["a", "b"])
        self.assertEqual(extract_scope_letters("Torres A-D"), ["a", "b", "c", "d"])
        self.assertEqual(extract_scope_letters("Centro"), [])

    def test_portal_datetime(self):
        self.assertEqual(format_portal_datetime(datetime(2026, 10, 20, 9, 5)), "20/10/2026 09:05")
        self.assertEqual(format_portal_datetime(None), "")


if __name__ == '__main__':
    unittest.main()
