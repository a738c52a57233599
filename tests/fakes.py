"""In-process stand-ins for the remote replica and the proof backend."""

import threading
import time
from typing import Dict, List, Any, Optional

from custody.key_custody import RemoteReplica
from utils.errors import ReplicaError
from zk.verifier import VerificationBackend


class InMemoryReplica(RemoteReplica):
    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.get_calls = 0
        self._lock = threading.Lock()

    def put(self, data: bytes, name: Optional[str] = None) -> str:
        with self._lock:
            remote_id = f"mem-{len(self.objects)}"
            self.objects[remote_id] = data
        return remote_id

    def get(self, remote_id: str) -> bytes:
        self.get_calls += 1
        try:
            return self.objects[remote_id]
        except KeyError as e:
            raise ReplicaError(f"unknown id {remote_id}") from e


class FailingReplica(RemoteReplica):
    def put(self, data: bytes, name: Optional[str] = None) -> str:
        raise ReplicaError("replica offline")

    def get(self, remote_id: str) -> bytes:
        raise ReplicaError("replica offline")


class SlowReplica(InMemoryReplica):
    def __init__(self, delay: float = 1.0):
        super().__init__()
        self.delay = delay

    def get(self, remote_id: str) -> bytes:
        time.sleep(self.delay)
        return super().get(remote_id)


class RecordingBackend(VerificationBackend):
    def __init__(self, result: bool = True):
        self.result = result
        self.calls: List[Dict[str, Any]] = []

    def verify(self, vkey, public_signals, proof) -> bool:
        self.calls.append({'vkey': vkey, 'signals': public_signals, 'proof': proof})
        return self.result


def sample_proof() -> Dict[str, Any]:
    return {
        'pi_a': ["1", "2", "1"],
        'pi_b': [["1", "2"], ["3", "4"], ["1", "0"]],
        'pi_c': ["5", "6", "1"],
        'protocol': "groth16",
        'curve': "bn128"
    }


def sample_vkey() -> Dict[str, Any]:
    return {
        'protocol': "groth16",
        'curve': "bn128",
        'nPublic': 3,
        'vk_alpha_1': ["1", "2", "1"],
        'IC': [["1", "2", "1"]] * 4
    }
