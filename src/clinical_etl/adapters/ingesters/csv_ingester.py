"""CSV Lab-Result Ingestion Adapter.

This adapter implements the IngestionPort contract for header-qualified
delimited lab-result files (the ``labx`` layout: ``patientId, code, value,
unit, effectiveDateTime``). Every data row becomes one CanonicalObservation
candidate that is validated on its own.

Security Impact:
    - Triage logic rejects malformed rows without affecting sibling rows
    - Rejected rows are logged with a truncated preview for the audit trail
    - Each row is hashed (SHA-256) for traceability back to the source bytes

Architecture:
    - Implements IngestionPort (Hexagonal Architecture)
    - Configurable column mapping, case-insensitive header matching
    - Pure parser: bytes in, Results out, no I/O
"""

import hashlib
import io
import json
import logging
from typing import Any, Dict, Iterator, List, Optional

import pandas as pd

from clinical_etl.domain.models import CanonicalObservation
from clinical_etl.domain.ports import (
    AdapterContext,
    IngestionPort,
    RecordParseError,
    Result,
    UnsupportedFormatError,
)
from clinical_etl.domain.validators import Validators, get_validators

logger = logging.getLogger(__name__)

DTO_FIELDS = ("patientId", "code", "value", "unit", "effectiveDateTime")

# stands in for a row with too many fields so rejections keep their file position
WIDE_ROW_MARKER = "\x00wide-row\x00"


class CSVIngester(IngestionPort):
    """CSV ingestion adapter with configurable column mapping and per-row isolation.

    Key Features:
        - Header row required; blank lines skipped; cells trimmed
        - Column mapping: DTO field -> CSV column (defaults to identical names)
        - Rows with too many fields are rejected individually, in file order
        - Each row wrapped in its own validation so one bad row never aborts the rest

    Column Mapping Format:
        {
            "patientId": "MRN",
            "code": "LOINC",
            "value": "Result",
            "unit": "Units",
            "effectiveDateTime": "CollectedAt"
        }

    Parameters:
        column_mapping: Dictionary mapping DTO fields to CSV column names
        delimiter: CSV delimiter character (default: ',', also supports '\\t', ';', '|')
        validators: Pre-compiled validators (defaults to the process-wide set)
    """

    default_source_system = "csv:labx"

    def __init__(
        self,
        column_mapping: Optional[Dict[str, str]] = None,
        delimiter: str = ',',
        validators: Optional[Validators] = None
    ):
        self.column_mapping = column_mapping or {}
        self.delimiter = delimiter
        self.adapter_name = "csv_ingester"
        self._validators = validators or get_validators()

    def iter_results(self, buffer: bytes, context: AdapterContext) -> Iterator[Result[CanonicalObservation]]:
        """Parse CSV bytes and yield one Result per data row, in file order.

        Parameters:
            buffer: Raw CSV bytes (UTF-8, optional BOM)
            context: Tenant and source-system label

        Yields:
            Result[CanonicalObservation]: validated DTO or RecordParseError failure

        Raises:
            UnsupportedFormatError: If the buffer is not decodable delimited text
        """
        wide_rows: List[List[str]] = []

        def reject_line(fields: List[str]) -> List[str]:
            wide_rows.append(fields)
            return [WIDE_ROW_MARKER]

        # header=None keeps the header line as row 0 so its width bounds every data row;
        # with header=0 a long first data row is taken as an implicit index column
        try:
            frame = pd.read_csv(
                io.BytesIO(buffer),
                delimiter=self.delimiter,
                header=None,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                skipinitialspace=True,
                encoding='utf-8-sig',
                engine='python',
                on_bad_lines=reject_line,
            )
        except pd.errors.EmptyDataError:
            logger.warning(f"CSV buffer for tenant {context.tenant_id} is empty")
            return
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            raise UnsupportedFormatError(
                f"CSV buffer cannot be parsed: {str(e)}",
                source=self.adapter_name,
            ) from e

        if frame.empty:
            return

        headers = [self._clean_cell(cell) for cell in frame.iloc[0].tolist()]
        column_mapping = self._resolve_column_mapping(headers)
        source_system = self.source_system(context)
        pending_wide_rows = iter(wide_rows)

        for index, row in enumerate(frame.iloc[1:].itertuples(index=False, name=None), start=1):
            if self._clean_cell(row[0]) == WIDE_ROW_MARKER:
                yield self._reject_wide_row(next(pending_wide_rows), index, len(headers))
                continue
            cells = {column: self._clean_cell(value) for column, value in zip(headers, row)}
            yield self._row_to_result(cells, index, column_mapping, source_system)

    def _reject_wide_row(self, fields: List[str], index: int, expected: int) -> Result[CanonicalObservation]:
        error = RecordParseError(
            f"Row {index}: has {len(fields)} fields, expected {expected}",
            source=f"row:{index}",
            details={"preview": self._truncate_for_logging(fields)},
        )
        self._log_rejection(index, error)
        return Result.failure_result(error)

    def _resolve_column_mapping(self, headers: List[str]) -> Dict[str, str]:
        """Map each DTO field to an actual header (case-insensitive)."""
        header_map = {header.lower(): header for header in headers}
        mapping = {}
        for dto_field in DTO_FIELDS:
            wanted = self.column_mapping.get(dto_field, dto_field)
            mapping[dto_field] = header_map.get(wanted.strip().lower(), wanted)
        return mapping

    def _row_to_result(
        self,
        cells: Dict[str, str],
        index: int,
        column_mapping: Dict[str, str],
        source_system: str
    ) -> Result[CanonicalObservation]:
        raw_value = cells.get(column_mapping["value"], "")
        try:
            value = float(raw_value)
        except ValueError:
            error = RecordParseError(
                f"Row {index}: value {raw_value!r} is not numeric",
                source=f"row:{index}",
            )
            self._log_rejection(index, error)
            return Result.failure_result(error)

        candidate = {
            "schemaVersion": 1,
            "patientId": cells.get(column_mapping["patientId"], ""),
            "code": cells.get(column_mapping["code"], ""),
            "value": value,
            "unit": cells.get(column_mapping["unit"], ""),
            "effectiveDateTime": cells.get(column_mapping["effectiveDateTime"], ""),
            "sourceSystem": source_system,
            "ingestHash": self._generate_hash_from_row(cells),
        }
        result = self._validators.dto.validate(candidate)
        if result.is_failure():
            error = RecordParseError(f"Row {index}: {result.error}", source=f"row:{index}", issues=result.issues)
            self._log_rejection(index, error)
            return Result.failure_result(error)
        return result

    @staticmethod
    def _clean_cell(value: Any) -> str:
        # short rows are padded with NaN regardless of keep_default_na
        if not isinstance(value, str):
            return ""
        return value.strip()

    @staticmethod
    def _generate_hash_from_row(row_dict: Dict[str, Any]) -> str:
        """Generate ``sha256:<hex>`` over the row's canonical JSON (column order kept)."""
        record_str = json.dumps(row_dict, separators=(',', ':'), ensure_ascii=False)
        return "sha256:" + hashlib.sha256(record_str.encode('utf-8')).hexdigest()

    def _log_rejection(self, index: Optional[int], error: RecordParseError) -> None:
        logger.warning(
            f"CSV row rejected: {error}",
            extra={
                'rejection_type': 'validation_failure',
                'adapter': self.adapter_name,
                'record_index': index,
                'issues': [f"{issue.path} {issue.message}" for issue in error.issues],
            }
        )

    @staticmethod
    def _truncate_for_logging(fields: List[str], max_size: int = 200) -> str:
        preview = ",".join(str(field) for field in fields)
        return preview if len(preview) <= max_size else preview[:max_size] + "..."
