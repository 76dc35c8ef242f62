import pytest

from desktop import codes
from desktop.codes import InsecureCodeWarning, generate_code, is_well_formed


def test_code_format():
    code = generate_code()
    prefix, *groups = code.split("-")
    assert prefix == "ACE"
    assert len(groups) == 3
    assert all(len(g) == 4 and set(g) <= set(codes.CODE_ALPHABET) for g in groups)
    assert is_well_formed(code)


def test_custom_prefix():
    assert generate_code("offline").startswith("OFFLINE-")
    assert is_well_formed(generate_code("OFFLINE"))


def test_ambiguous_symbols_never_appear():
    sample = "".join(generate_code() for _ in range(200))
    assert not set("01OI") & set(sample.replace("ACE-", ""))


def test_codes_are_distinct():
    assert len({generate_code() for _ in range(10000)}) == 10000


def test_weak_randomness_is_flagged(monkeypatch, caplog):
    def unavailable(seq):
        raise NotImplementedError

    monkeypatch.setattr(codes.secrets, "choice", unavailable)
    with pytest.warns(InsecureCodeWarning):
        code = generate_code()
    assert is_well_formed(code)
    assert "weak PRNG" in caplog.text


@pytest.mark.parametrize("value", ["", "ACE", "ACE-AAAA-BBBB", "ACE-AAA0-BBBB-CCCC", "ACE-AAAA-BBBB-CCCC-DDDD"])
def test_malformed_codes(value):
    assert not is_well_formed(value)
