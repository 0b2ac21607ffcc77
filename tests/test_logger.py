"""
PPP -- Audit Logger Tests
=========================
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import numpy as np
import pytest

_project_root = str(Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from ppp_logger import PppAuditLogger, PppJSONEncoder, get_logger
from ppp_types import EngineStage


def _read(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


@pytest.fixture
def audit(tmp_path):
    logger = PppAuditLogger(str(tmp_path))
    yield logger
    logger.close()


class TestAuditLogger:

    def test_startup_entry(self, audit, tmp_path):
        entries = _read(tmp_path / PppAuditLogger.FILE_NAME)
        assert entries[0]["event"] == "system_startup"
        assert entries[0]["level"] == "SYSTEM"

    def test_request_entry(self, audit, tmp_path):
        audit.log_request(
            "detect_landmarks",
            [EngineStage.IDLE.value, EngineStage.FACE_DETECTED.value],
            {"crown": (150.0, 0.0), "vector": np.array([1.5, 2.5])},
            event="landmarks_detected",
        )
        entry = _read(tmp_path / PppAuditLogger.FILE_NAME)[-1]
        assert entry["event"] == "landmarks_detected"
        assert entry["level"] == "AUDIT"
        assert entry["data"]["stages"] == ["Idle", "FaceDetected"]
        assert entry["data"]["vector"] == [1.5, 2.5]

    def test_failed_request_is_warning(self, audit, tmp_path):
        audit.log_request("detect_landmarks", ["Idle", "Failed"], {}, event="request_failed")
        entry = _read(tmp_path / PppAuditLogger.FILE_NAME)[-1]
        assert entry["level"] == "WARN"

    def test_warn_and_error(self, audit, tmp_path):
        audit.warn("slow model", {"ms": 900})
        audit.error("model crashed", RuntimeError("boom"))
        entries = _read(tmp_path / PppAuditLogger.FILE_NAME)
        assert entries[-2]["event"] == "system_warning"
        assert entries[-1]["data"]["exception"] == "boom"

    def test_writes_after_close_are_dropped(self, tmp_path):
        logger = PppAuditLogger(str(tmp_path))
        logger.close()
        logger.log({"event": "late"})
        logger.close()
        events = [e["event"] for e in _read(tmp_path / PppAuditLogger.FILE_NAME)]
        assert events == ["system_startup", "system_shutdown"]

    def test_singleton_per_directory(self, tmp_path):
        a = get_logger(str(tmp_path / "a"))
        assert get_logger(str(tmp_path / "a")) is a
        b = get_logger(str(tmp_path / "b"))
        assert b is not a
        assert a.closed
        b.close()

    def test_closed_singleton_is_replaced(self, tmp_path):
        a = get_logger(str(tmp_path))
        a.close()
        b = get_logger(str(tmp_path))
        assert b is not a
        assert not b.closed
        b.close()


class TestEncoder:

    def test_numpy_and_enum(self):
        payload = {
            "f": np.float32(0.5),
            "i": np.int64(3),
            "stage": EngineStage.ESTIMATED,
        }
        decoded = json.loads(json.dumps(payload, cls=PppJSONEncoder))
        assert decoded == {"f": 0.5, "i": 3, "stage": "Estimated"}

    def test_unknown_type_still_raises(self):
        with pytest.raises(TypeError):
            json.dumps({"x": object()}, cls=PppJSONEncoder)
