from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from provisioning.models.records import InstallationRequest, SectorialNode, Technician


class RecordStore(ABC):
    """
    Persistence collaborator for the workflows.
    Installation requests are owned elsewhere; workflows read them and
    occasionally amend a single field.
    """

    @abstractmethod
    def get_request(self, request_id: int) -> Optional[InstallationRequest]:
        """Returns the installation request or None."""
        pass

    @abstractmethod
    def list_requests(self) -> List[InstallationRequest]:
        pass

    @abstractmethod
    def update_request(self, request_id: int, changes: Dict[str, Any]) -> InstallationRequest:
        """
        Apply field changes (snake_case attribute names) and persist.
        Raises KeyError when the record does not exist.
        """
        pass

    @abstractmethod
    def list_technicians(self) -> List[Technician]:
        pass

    @abstractmethod
    def find_technician_by_email(self, email: str) -> Optional[Technician]:
        pass

    @abstractmethod
    def add_technician(self, technician: Technician) -> Technician:
        """Persists a new technician and returns it with its id assigned."""
        pass

    @abstractmethod
    def upsert_sectorial(self, node: SectorialNode) -> SectorialNode:
        """Insert or replace by `nombre`."""
        pass

    @abstractmethod
    def delete_sectorials_except(self, names: Iterable[str]) -> int:
        """Remove nodes whose name is not listed. Returns how many were removed."""
        pass
