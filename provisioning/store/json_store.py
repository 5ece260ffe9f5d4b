import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar, Union

from provisioning.models.records import InstallationRequest, Record, SectorialNode, Technician
from provisioning.store.base import RecordStore

logger = logging.getLogger("store.json")

R = TypeVar("R", bound=Record)


class JsonRecordStore(RecordStore):
    """
    One pretty-printed JSON array per collection under `base_dir`:
    installation_requests.json, technicians.json, sectorial_nodes.json.
    """
    REQUESTS = "installation_requests"
    TECHNICIANS = "technicians"
    SECTORIALS = "sectorial_nodes"

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, collection: str) -> Path:
        return self.base_dir / f"{collection}.json"

    def _load(self, collection: str, model: Type[R]) -> List[R]:
        path = self._path(collection)
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            rows = json.load(f)
        return [model.model_validate(row) for row in rows]

    def _save(self, collection: str, records: List[Record]):
        path = self._path(collection)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([r.to_json_dict() for r in records], f, indent=2, ensure_ascii=False)
        tmp.replace(path)

    @staticmethod
    def _next_id(records: List[Record]) -> int:
        ids = [r.id for r in records if getattr(r, "id", None) is not None]
        return max(ids, default=0) + 1

    # installation requests
    def get_request(self, request_id: int) -> Optional[InstallationRequest]:
        for request in self._load(self.REQUESTS, InstallationRequest):
            if request.id == request_id:
                return request
        return None

    def list_requests(self) -> List[InstallationRequest]:
        return self._load(self.REQUESTS, InstallationRequest)

    def add_request(self, request: InstallationRequest) -> InstallationRequest:
        with self._lock:
            requests = self._load(self.REQUESTS, InstallationRequest)
            requests.append(request)
            self._save(self.REQUESTS, requests)
        return request

    def update_request(self, request_id: int, changes: Dict[str, Any]) -> InstallationRequest:
        with self._lock:
            requests = self._load(self.REQUESTS, InstallationRequest)
            for idx, request in enumerate(requests):
                if request.id == request_id:
                    updated = request.model_copy(update=changes)
                    requests[idx] = InstallationRequest.model_validate(updated.model_dump())
                    self._save(self.REQUESTS, requests)
                    logger.debug(f"Installation request {request_id} updated: {sorted(changes)}")
                    return requests[idx]
        raise KeyError(request_id)

    # technicians
    def list_technicians(self) -> List[Technician]:
        return self._load(self.TECHNICIANS, Technician)

    def find_technician_by_email(self, email: str) -> Optional[Technician]:
        wanted = (email or "").strip().lower()
        for technician in self.list_technicians():
            if (technician.email or "").strip().lower() == wanted:
                return technician
        return None

    def add_technician(self, technician: Technician) -> Technician:
        with self._lock:
            technicians = self._load(self.TECHNICIANS, Technician)
            saved = technician.model_copy(update={"id": self._next_id(technicians)})
            technicians.append(saved)
            self._save(self.TECHNICIANS, technicians)
        return saved

    # sectorial nodes
    def list_sectorials(self) -> List[SectorialNode]:
        return self._load(self.SECTORIALS, SectorialNode)

    def upsert_sectorial(self, node: SectorialNode) -> SectorialNode:
        with self._lock:
            nodes = self._load(self.SECTORIALS, SectorialNode)
            for idx, existing in enumerate(nodes):
                if existing.nombre == node.nombre:
                    saved = node.model_copy(update={"id": existing.id})
                    nodes[idx] = saved
                    break
            else:
                saved = node.model_copy(update={"id": self._next_id(nodes)})
                nodes.append(saved)
            self._save(self.SECTORIALS, nodes)
        return saved

    def delete_sectorials_except(self, names: Iterable[str]) -> int:
        keep = set(names)
        with self._lock:
            nodes = self._load(self.SECTORIALS, SectorialNode)
            remaining = [n for n in nodes if n.nombre in keep]
            removed = len(nodes) - len(remaining)
            if removed:
                self._save(self.SECTORIALS, remaining)
        return removed
