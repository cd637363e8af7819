import pytest

from gpushare.version import main, version


def test_version_string():
    assert version() == "v0.0.1"


def test_main_prints_version(capsys):
    assert main([]) == 0
    assert capsys.readouterr().out == version() + "\n"


def test_main_rejects_unknown_arguments():
    with pytest.raises(SystemExit) as info:
        main(["--bogus"])
    assert info.value.code == 2