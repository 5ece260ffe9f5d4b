import unittest

from provisioning.enrichment.similarity import best_match, combined_score, domain_bonus, score


class TestScore(unittest.TestCase):
    def test_identity(self):
        for text in ["juan perez", "Plan 50MB", "Villa Maule - Zona 201"]:
            self.assertEqual(score(text, text), 1.0)

    def test_empty_scores_zero(self):
        self.assertEqual(score("", "juan perez"), 0.0)
        self.assertEqual(score("juan perez", ""), 0.0)

    def test_containment_is_full_match(self):
        self.assertEqual(score("juan perez", "sr juan perez lopez"), 1.0)

    def test_token_overlap(self):
        self.assertAlmostEqual(score("juan perez", "juan lopez"), 1 / 3)
        self.assertEqual(score("perez juan", "juan perez"), 1.0)

    def test_accents_do_not_matter(self):
        self.assertEqual(score("Jose Pérez", "JOSÉ PEREZ"), 1.0)


class TestDomainBonus(unittest.TestCase):
    def test_tower_letter(self):
        self.assertAlmostEqual(domain_bonus("Edificio Torre B", "Torre B Norte"), 0.6)

    def test_numeric_and_location_with_cto_penalty(self):
        # shared id 12 (+0.4), shared "mirador" (+0.6), candidate is a CTO (-0.25)
        self.assertAlmostEqual(domain_bonus("Mirador 12", "CTO 12 Mirador"), 0.75)

    def test_no_signal(self):
        self.assertEqual(domain_bonus("Centro", "Poniente"), 0.0)

    def test_combined_prefers_matching_tower(self):
        self.assertGreater(combined_score("Condominio Torre B", "Condominio Torre B"),
                           combined_score("Condominio Torre B", "Condominio Torre C"))


class TestBestMatch(unittest.TestCase):
    def setUp(self):
        self.names = ["Ana Torres", "Ana María Torres Soto", "Pedro Torres"]

    def test_exact_short_circuits(self):
        item, value = best_match("ana torres", self.names, key=lambda n: n)
        self.assertEqual(item, "Ana Torres")
        self.assertEqual(value, 1.0)

    def test_below_threshold(self):
        item, value = best_match("Luis Vera", self.names, key=lambda n: n)
        self.assertIsNone(item)
        self.assertLess(value, 0.6)

    def test_empty_target(self):
        self.assertEqual(best_match("", self.names, key=lambda n: n), (None, 0.0))


if __name__ == '__main__':
    unittest.main()
