import os
from pathlib import Path

import pytest

from signalgate.utils.single_instance import GatewayAlreadyRunning, StorageLock


@pytest.mark.skipif(os.name == "nt", reason="flock semantics")
def test_second_gateway_on_same_storage_is_refused(workspace_tmp_path: Path) -> None:
    path = workspace_tmp_path / "state" / "gateway.lock"
    with StorageLock(path, port=3014) as first:
        assert first.held
        with pytest.raises(GatewayAlreadyRunning) as exc:
            StorageLock(path).acquire()
        assert exc.value.holder["pid"] == os.getpid()
        assert exc.value.holder["port"] == 3014
    assert not first.held

    again = StorageLock(path)
    again.acquire()
    again.release()
