"""
Tests for the persona registry.
"""

import pytest

from src.relay.errors import InvalidMode
from src.relay.extract import extract_appointment
from src.relay.personas import Persona, PersonaRegistry, build_default_registry


class TestRegistryLookup:
    """Tests for mode lookup."""

    def test_default_modes(self, registry):
        assert registry.modes() == ["dental", "teleshopping", "tarot"]
        assert len(registry) == 3

    def test_get_known_mode(self, registry):
        persona = registry.get("dental")
        assert persona.mode == "dental"
        assert persona.name == "Dental AI - Clinica Dinți de Fier"
        assert persona.instructions

    def test_unknown_mode_raises(self, registry):
        with pytest.raises(InvalidMode) as exc_info:
            registry.get("astrology")

        assert exc_info.value.mode == "astrology"
        assert exc_info.value.available == ["dental", "teleshopping", "tarot"]
        assert "astrology" in str(exc_info.value)

    def test_contains(self, registry):
        assert "tarot" in registry
        assert "astrology" not in registry

    def test_name_for_unknown_mode(self, registry):
        assert registry.name_for("tarot") == "Tarot AI - Madame Stella"
        assert registry.name_for("nope") == "Unknown"

    def test_register_custom_persona(self):
        registry = PersonaRegistry()
        registry.register(Persona(mode="support", name="Support", instructions="Be helpful."))

        assert registry.modes() == ["support"]
        assert registry.get("support").name == "Support"


class TestPersonaContent:
    """Tests for the built-in persona bundles."""

    def test_only_dental_has_extractor(self, registry):
        assert registry.get("dental").extractor is extract_appointment
        assert registry.get("dental").supports_extraction
        assert not registry.get("teleshopping").supports_extraction
        assert not registry.get("tarot").supports_extraction

    @pytest.mark.parametrize("mode", ["dental", "teleshopping", "tarot"])
    def test_every_persona_has_fallbacks(self, registry, mode):
        persona = registry.get(mode)
        for kind in ("timeout", "rate_limited", "other"):
            assert persona.fallback_for(kind)

    @pytest.mark.parametrize("mode", ["dental", "teleshopping", "tarot"])
    def test_greeting_is_scripted_in_instructions(self, registry, mode):
        persona = registry.get(mode)

        assert persona.greeting
        assert persona.greeting in persona.instructions

    def test_unknown_failure_kind_uses_other(self, registry):
        persona = registry.get("tarot")
        assert persona.fallback_for("weird") == persona.fallback_for("other")

    def test_ending_phrases_union_is_ordered_and_unique(self):
        registry = PersonaRegistry([
            Persona(mode="a", name="A", instructions="", ending_phrases=("bye", "ciao")),
            Persona(mode="b", name="B", instructions="", ending_phrases=("ciao", "farewell")),
        ])

        assert registry.ending_phrases() == ("bye", "ciao", "farewell")

    def test_is_ending_case_insensitive(self, registry):
        assert registry.get("dental").is_ending("LA REVEDERE!")
        assert not registry.get("dental").is_ending("Bună ziua")

    def test_build_default_registry_is_fresh(self):
        first = build_default_registry()
        first.register(Persona(mode="extra", name="Extra", instructions=""))

        assert "extra" not in build_default_registry()
