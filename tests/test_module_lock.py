import threading
import time

import module_lock


def test_lock_path_uses_configured_directory(monkeypatch, tmp_path):
    monkeypatch.setenv("LOGIC_LOCK_DIR", str(tmp_path))
    assert module_lock.lock_path(12) == tmp_path / "logic-module-12.lock"


def test_lock_dir_defaults_next_to_database(monkeypatch, tmp_path):
    monkeypatch.delenv("LOGIC_LOCK_DIR", raising=False)
    monkeypatch.setenv("DB_PATH", str(tmp_path / "logic.db"))
    assert module_lock.lock_dir() == tmp_path.resolve()


def test_same_module_is_serialized(tmp_path):
    events = []
    inside = threading.Event()

    def holder():
        with module_lock.module_lock(1, tmp_path):
            events.append("first-in")
            inside.set()
            time.sleep(0.2)
            events.append("first-out")

    def waiter():
        inside.wait()
        with module_lock.module_lock(1, tmp_path):
            events.append("second-in")

    threads = [threading.Thread(target=holder), threading.Thread(target=waiter)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert events == ["first-in", "first-out", "second-in"]
    assert (tmp_path / "logic-module-1.lock").exists()


def test_different_modules_do_not_block(tmp_path):
    acquired = threading.Event()

    def other():
        with module_lock.module_lock(2, tmp_path):
            acquired.set()

    with module_lock.module_lock(1, tmp_path):
        thread = threading.Thread(target=other)
        thread.start()
        assert acquired.wait(timeout=5)
    thread.join()


def test_lock_is_reentrant_across_sequential_use(tmp_path):
    for _ in range(3):
        with module_lock.module_lock(4, tmp_path):
            pass
