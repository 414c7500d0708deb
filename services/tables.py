from typing import Any, Dict, List, Optional
import logging

from backend import PosBackend
from errors import TableUnavailable
from models import Table, TableStatus
from services.projection import as_id, extract_list
from session import Session

logger = logging.getLogger(__name__)

TABLES_ENDPOINT = "get_tables.php"
TABLE_MANAGEMENT_ENDPOINT = "table_management.php"


def project_table(raw: Dict[str, Any]) -> Table:
    capacity = raw.get("capacity")
    return Table(
        table_id=as_id(raw.get("table_id", raw.get("id"))),
        hall_id=as_id(raw.get("hall_id")),
        table_number=str(raw["table_number"]) if raw.get("table_number") is not None else None,
        capacity=int(capacity) if str(capacity or "").isdigit() else 0,
        status=TableStatus.parse(raw.get("status")),
    )


class TableService:
    """
    Table occupancy side effects. Every write failure here is returned as a
    warning string; nothing in this class blocks an order, bill or payment.
    """

    def __init__(self, backend: PosBackend, session: Session):
        self.backend = backend
        self.session = session

    async def list_tables(self) -> List[Table]:
        response = await self.backend.post(TABLES_ENDPOINT, {
            "terminal": self.session.terminal,
            "branch_id": self.session.require_branch(),
        })
        if not response.ok:
            logger.warning(f"⚠️ Could not load tables: {response.message}")
            return []
        return [project_table(row) for row in extract_list(response.data) if row.get("table_id", row.get("id")) is not None]

    async def find_table(self, table_id: Any) -> Optional[Table]:
        for table in await self.list_tables():
            if str(table.table_id) == str(table_id):
                return table
        return None

    async def ensure_available(self, table_id: Any, own_table_id: Any = None) -> Optional[Table]:
        """Fresh read before seating an order; the order's own table is always acceptable."""
        table = await self.find_table(table_id)
        if table is None:
            logger.warning(f"⚠️ Table {table_id} not found while checking availability")
            return None
        is_own = own_table_id is not None and str(own_table_id) == str(table_id)
        if table.status == TableStatus.RUNNING and not is_own:
            raise TableUnavailable(
                f"Table {table.table_number or table_id} is currently occupied. Please select an available table."
            )
        return table

    async def set_status(self, table: Table, status: TableStatus) -> bool:
        # table_management.php replaces the whole record, so everything is carried forward
        response = await self.backend.post(TABLE_MANAGEMENT_ENDPOINT, {
            "table_id": table.table_id,
            "hall_id": table.hall_id,
            "table_number": table.table_number,
            "capacity": table.capacity,
            "status": status.value,
            "terminal": self.session.terminal,
            "branch_id": self.session.require_branch(),
            "action": "update",
        })
        succeeded = response.ok and not (isinstance(response.data, dict) and response.data.get("success") is False)
        if succeeded:
            logger.info(f"✅ Table {table.table_number or table.table_id} set to {status.value}")
        else:
            logger.warning(f"⚠️ Failed to set table {table.table_id} to {status.value}: {response.message}")
        return succeeded

    async def release(self, table_id: Any) -> Optional[str]:
        """Set a table Available; returns a warning on failure, None on success."""
        if table_id in (None, "", 0):
            return None
        table = await self.find_table(table_id)
        if table is None:
            return f"Table {table_id} could not be found to mark it as available."
        if not await self.set_status(table, TableStatus.AVAILABLE):
            return f"Table {table.table_number or table_id} could not be marked as available. Please update it manually."
        return None

    async def occupy(self, table_id: Any, table: Optional[Table] = None) -> Optional[str]:
        if table_id in (None, "", 0):
            return None
        table = table or await self.find_table(table_id)
        if table is None:
            return f"Table {table_id} could not be found to mark it as running."
        if not await self.set_status(table, TableStatus.RUNNING):
            return f"Table {table.table_number or table_id} could not be marked as running. Please update it manually."
        return None

    async def transfer(self, old_table_id: Any, new_table_id: Any, new_table: Optional[Table] = None) -> List[str]:
        """Old table to Available, new table to Running; either failure is only a warning."""
        if str(old_table_id) == str(new_table_id):
            return []
        warnings = []
        for warning in (await self.release(old_table_id), await self.occupy(new_table_id, new_table)):
            if warning:
                warnings.append(warning)
        return warnings
