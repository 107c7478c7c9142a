import pytest

import main


def test_main_exits_with_runner_status(monkeypatch):
    monkeypatch.setattr(main, "run", lambda: 3)
    with pytest.raises(SystemExit) as excinfo:
        main.main()
    assert excinfo.value.code == 3
