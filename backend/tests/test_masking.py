"""
Tests for the column masking rules and their resolution.
"""
from datetime import date, datetime, timedelta
from decimal import Decimal

from sentinelconnect.entities import ColumnSnapshot
from sentinelconnect.masking import (
    REDACTED,
    Hash,
    NoMask,
    Partial,
    Randomize,
    Redact,
    mask_row,
    resolve_rule,
)


def _col(masking_type="none", masking_config=None, pk=False, name="col"):
    return ColumnSnapshot(id="c1", source_column=name, masking_type=masking_type,
                          masking_config=masking_config, is_primary_key=pk)


class TestRules:
    """Behaviour of each rule variant"""

    def test_none_is_identity(self):
        assert NoMask().apply("x") == "x"
        assert NoMask().apply(None) is None

    def test_redact_hides_value_and_null(self):
        r = Redact()
        assert r.apply("secret") == REDACTED
        assert r.apply(None) == REDACTED

    def test_hash_is_deterministic_for_a_secret(self):
        h = Hash(secret="s1")
        assert h.apply("alice@example.com") == h.apply("alice@example.com")
        assert h.apply("alice@example.com") != "alice@example.com"
        assert len(h.apply("alice@example.com")) == 64

    def test_hash_depends_on_secret(self):
        assert Hash(secret="s1").apply("v") != Hash(secret="s2").apply("v")

    def test_hash_length_and_null(self):
        assert len(Hash(secret="s", length=12).apply(42)) == 12
        assert Hash(secret="s").apply(None) is None

    def test_randomize_keeps_int_shape(self):
        r = Randomize(seed=7)
        for v in (5, 1234, -987654):
            out = r.apply(v)
            assert isinstance(out, int)
            assert len(str(abs(out))) == len(str(abs(v)))
            assert (out < 0) == (v < 0)

    def test_randomize_bounds(self):
        r = Randomize(low=10, high=20, seed=1)
        assert all(10 <= r.apply(99) <= 20 for _ in range(50))

    def test_randomize_keeps_types(self):
        r = Randomize(seed=3)
        assert isinstance(r.apply(1.5), float)
        assert isinstance(r.apply(Decimal("10.25")), Decimal)
        assert r.apply(Decimal("10.25")).as_tuple().exponent == -2
        assert isinstance(r.apply(datetime(2024, 1, 1, 12, 0)), datetime)
        assert isinstance(r.apply(date(2024, 1, 1)), date)
        assert isinstance(r.apply(True), bool)

    def test_randomize_timestamp_text_follows_declared_type(self):
        r = Randomize(seed=5, days=3, declared_type="timestamp")
        out = r.apply("2024-01-02T00:00:00Z")
        assert isinstance(out, datetime)
        assert out.tzinfo is None
        assert abs(out - datetime(2024, 1, 2)) <= timedelta(days=3)
        assert isinstance(r.apply("2024-01-02 08:30:00"), datetime)

    def test_randomize_date_text(self):
        out = Randomize(seed=2, days=5, declared_type="DATE").apply("2024-05-01")
        assert isinstance(out, date)
        assert abs(out - date(2024, 5, 1)) <= timedelta(days=5)

    def test_randomize_numeric_text_fits_declared_precision(self):
        r = Randomize(seed=9, declared_type="numeric(5,2)")
        for _ in range(50):
            out = r.apply("999.99")
            assert isinstance(out, Decimal)
            assert out.as_tuple().exponent == -2
            assert abs(out) <= Decimal("999.99")
        assert isinstance(Randomize(seed=1, declared_type="integer").apply("1234"), int)

    def test_randomize_unreadable_text_becomes_null_and_is_counted(self):
        r = Randomize(seed=1, declared_type="timestamp")
        assert r.apply("not a date") is None
        assert r.apply(None) is None
        assert r.unparsable == 1

    def test_randomize_untyped_text_keeps_shape(self):
        out = Randomize(seed=4, declared_type="varchar(20)").apply("2024-01-02")
        assert len(out) == 10 and out[4] == "-"

    def test_randomize_string_keeps_character_classes(self):
        out = Randomize(seed=11).apply("Ab-12")
        assert len(out) == 5
        assert out[0].isupper() and out[1].islower()
        assert out[2] == "-"
        assert out[3:].isdigit()

    def test_partial_default_keeps_last_four(self):
        assert Partial().apply("4111111111111111") == "************1111"

    def test_partial_prefix_and_suffix(self):
        assert Partial(prefix=2, suffix=2, char="#").apply("abcdefgh") == "ab####gh"

    def test_partial_short_value_is_fully_masked(self):
        assert Partial(prefix=2, suffix=2).apply("abc") == "***"

    def test_mask_row_applies_positionally(self):
        rules = [NoMask(), Redact(), Partial(suffix=1)]
        assert mask_row(rules, (1, "x", "abcd")) == (1, REDACTED, "***d")


class TestResolveRule:
    """Parameter parsing and fail-closed resolution"""

    def test_valid_rule(self):
        res = resolve_rule(_col("partial", '{"prefix": 1, "suffix": 2}'), "s")
        assert res.rule == Partial(prefix=1, suffix=2)
        assert res.warnings == ()

    def test_hash_uses_given_secret(self):
        res = resolve_rule(_col("hash"), "mask-secret")
        assert isinstance(res.rule, Hash)
        assert res.rule.apply("v") == Hash(secret="mask-secret").apply("v")

    def test_malformed_json_falls_back_to_redact(self):
        res = resolve_rule(_col("partial", "{not json"), "s")
        assert isinstance(res.rule, Redact)
        assert len(res.warnings) == 1
        assert "falling back to redact" in res.warnings[0]

    def test_unknown_parameter_falls_back_to_redact(self):
        res = resolve_rule(_col("hash", '{"salt": "x"}'), "s")
        assert isinstance(res.rule, Redact)
        assert "salt" in res.warnings[0]

    def test_unknown_rule_falls_back_to_redact(self):
        res = resolve_rule(_col("scramble"), "s")
        assert isinstance(res.rule, Redact)

    def test_bad_value_falls_back_to_redact(self):
        assert isinstance(resolve_rule(_col("hash", '{"length": 0}'), "s").rule, Redact)
        assert isinstance(resolve_rule(_col("randomize", '{"min": 5}'), "s").rule, Redact)
        assert isinstance(resolve_rule(_col("partial", '{"char": "ab"}'), "s").rule, Redact)

    def test_primary_key_randomize_becomes_hash(self):
        res = resolve_rule(_col("randomize", pk=True, name="id"), "s")
        assert isinstance(res.rule, Hash)
        assert "primary key" in res.warnings[0]

    def test_primary_key_randomize_allowed_by_policy(self):
        res = resolve_rule(_col("randomize", pk=True), "s", allow_nondeterministic_pk=True)
        assert isinstance(res.rule, Randomize)
        assert res.warnings == ()

    def test_masking_type_is_case_insensitive(self):
        assert isinstance(resolve_rule(_col("REDACT"), "s").rule, Redact)

    def test_randomize_receives_declared_type(self):
        col = ColumnSnapshot(id="c1", source_column="born", masking_type="randomize", data_type="date")
        res = resolve_rule(col, "s")
        assert isinstance(res.rule, Randomize)
        assert isinstance(res.rule.apply("1990-06-15"), date)
