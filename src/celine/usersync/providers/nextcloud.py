"""Nextcloud Tables reader.

Fetches the table scheme and rows and decodes each cell by column type:

- text                -> str
- selection, check    -> bool ("true"/"false")
- selection, single   -> label of the selected option
- selection, multi    -> list of selected option labels
- number              -> number
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from celine.usersync.config import NextcloudConnection
from celine.usersync.errors import SourceMalformed, SourceUnavailable

logger = logging.getLogger(__name__)


class NextcloudTableReader:
    """Reads one Nextcloud Tables table as a list of row mappings."""

    def __init__(
        self,
        connection: NextcloudConnection,
        table_id: int,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._connection = connection
        self._table_id = table_id
        self._timeout = timeout
        self._transport = transport

    @property
    def scheme_url(self) -> str:
        base = self._connection.url.rstrip("/")
        return f"{base}/ocs/v2.php/apps/tables/api/2/tables/scheme/{self._table_id}"

    @property
    def rows_url(self) -> str:
        base = self._connection.url.rstrip("/")
        return f"{base}/index.php/apps/tables/api/1/tables/{self._table_id}/rows"

    async def read_rows(self) -> list[dict[str, Any]]:
        """Fetch and decode all rows of the table."""
        headers = {"Accept": "application/json", "OCS-APIRequest": "true"}
        auth = (self._connection.username, self._connection.password)

        logger.debug("Reading Nextcloud table %s", self._table_id)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                headers=headers,
                auth=auth,
                transport=self._transport,
            ) as client:
                scheme_response = await client.get(self.scheme_url)
                scheme_response.raise_for_status()
                rows_response = await client.get(self.rows_url)
                rows_response.raise_for_status()
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"Cannot read Nextcloud table {self._table_id}: {e}") from e

        try:
            columns = scheme_response.json()["ocs"]["data"]["columns"]
            rows = rows_response.json()
            return parse_table(columns, rows)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SourceMalformed(
                f"Unexpected response for Nextcloud table {self._table_id}: {e}"
            ) from e


def _option_label(column: dict[str, Any], option_id: Any) -> str | None:
    for option in column.get("selectionOptions") or []:
        if option.get("id") == option_id:
            return option.get("label")
    return None


def _decode_cell(column: dict[str, Any], value: Any) -> Any:
    if column.get("type") != "selection":
        return value

    subtype = column.get("subtype") or ""
    if subtype == "check":
        if value in ("true", "false"):
            return value == "true"
        return value
    if subtype == "multi":
        labels = (_option_label(column, v) for v in value or [])
        return [label for label in labels if label is not None]
    return _option_label(column, value)


def parse_table(columns: list[dict[str, Any]], rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Map raw rows (cells keyed by column id) to ``{title: value}`` rows.

    Cells of columns missing from the scheme are dropped.

    Raises:
        SourceMalformed: the scheme or the rows are not lists of objects
            (error bodies such as ``{"message": ...}`` arrive with status 200).
    """
    if not isinstance(columns, list) or not all(isinstance(c, dict) for c in columns):
        raise SourceMalformed(f"Expected a list of columns, got {type(columns).__name__}")
    if not isinstance(rows, list):
        raise SourceMalformed(f"Expected a list of rows, got {type(rows).__name__}")

    by_id = {c["id"]: c for c in columns}
    result = []
    for index, row in enumerate(rows, start=1):
        if not isinstance(row, dict) or not isinstance(row.get("data") or [], list):
            raise SourceMalformed(f"Row {index} is not a table row: {row!r}")
        decoded: dict[str, Any] = {}
        for cell in row.get("data") or []:
            if not isinstance(cell, dict):
                raise SourceMalformed(f"Row {index} has a malformed cell: {cell!r}")
            column = by_id.get(cell.get("columnId"))
            if column is None:
                continue
            decoded[column["title"]] = _decode_cell(column, cell.get("value"))
        result.append(decoded)
    return result
