"""
CSV export parsing.

Turns the six dashboard export files into typed records. The first line of
every file is a header. Rows with too few fields, blank required fields or
unparseable dates/scores are skipped with a warning; they never abort a read.
"""
import csv
import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from ..config import CMAS_PATIENT_ID
from ..domain.models import Patient, LabResultGroup, LabResult, Measurement, CMASScore
from ..utils.dates import parse_csv_datetime, parse_csv_date

logger = logging.getLogger(__name__)


class CSVReader:
    """Reads the dashboard CSV exports."""

    # File name per record kind
    PATIENT_FILE = "Patient.csv"
    GROUP_FILE = "LabResultGroup.csv"
    LAB_RESULT_FILE = "LabResult.csv"
    ENGLISH_NAMES_FILE = "LabResults(EN).csv"
    MEASUREMENT_FILE = "Measurement.csv"
    CMAS_FILE = "CMAS.csv"

    # Accepted spellings of the English names export
    ENGLISH_NAMES_ALIASES = ("LabResults(EN).csv", "LabResultsEN.csv")

    REQUIRED_FILES = (
        PATIENT_FILE,
        GROUP_FILE,
        LAB_RESULT_FILE,
        ENGLISH_NAMES_FILE,
        MEASUREMENT_FILE,
        CMAS_FILE,
    )

    # Column of the English name in LabResults(EN).csv
    ENGLISH_NAME_COLUMN = 5

    def __init__(self, encoding: str = "utf-8-sig"):
        self.encoding = encoding

    # ------------------------------------------------------------------
    # Directory helpers
    # ------------------------------------------------------------------

    def resolve_file(self, directory: Path, filename: str) -> Optional[Path]:
        """Return the path of *filename* in *directory*, honouring aliases."""
        candidates = self.ENGLISH_NAMES_ALIASES if filename == self.ENGLISH_NAMES_FILE else (filename,)
        for candidate in candidates:
            path = Path(directory) / candidate
            if path.is_file():
                return path
        return None

    def missing_files(self, directory: Path) -> List[str]:
        return [name for name in self.REQUIRED_FILES if self.resolve_file(directory, name) is None]

    # ------------------------------------------------------------------
    # Low-level reading
    # ------------------------------------------------------------------

    def _read(self, path: Path) -> Tuple[List[str], Iterator[Tuple[int, List[str]]]]:
        """
        Read a CSV file.

        Returns:
            (header, rows) where rows yields (line_number, stripped_fields)
            for every non-blank data row.

        Raises:
            FileNotFoundError: *path* does not exist
        """
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"CSV file does not exist: {path}")

        with open(path, "r", newline="", encoding=self.encoding) as f:
            reader = csv.reader(f)
            header = next(reader, None)
            rows = []
            for fields in reader:
                if not any(field.strip() for field in fields):
                    continue
                rows.append((reader.line_num, [field.strip() for field in fields]))

        if header is None:
            logger.warning("Empty CSV file: %s", path)
            return [], iter(())
        return [h.strip() for h in header], iter(rows)

    # ------------------------------------------------------------------
    # Record readers
    # ------------------------------------------------------------------

    def read_patients(self, path: Path) -> List[Patient]:
        """Patient.csv: PatientID,Name"""
        _, rows = self._read(path)
        patients = []
        for line, fields in rows:
            if len(fields) < 2:
                logger.warning("%s:%d: expected 2 fields, got %d; skipped", Path(path).name, line, len(fields))
                continue
            try:
                patients.append(Patient(patient_id=fields[0], name=fields[1]))
            except ValueError as e:
                logger.warning("%s:%d: %s; skipped", Path(path).name, line, e)
        logger.info("Parsed %d patients from %s", len(patients), path)
        return patients

    def read_groups(self, path: Path) -> List[LabResultGroup]:
        """LabResultGroup.csv: GroupID,GroupName"""
        _, rows = self._read(path)
        groups = []
        for line, fields in rows:
            if len(fields) < 2:
                logger.warning("%s:%d: expected 2 fields, got %d; skipped", Path(path).name, line, len(fields))
                continue
            try:
                groups.append(LabResultGroup(group_id=fields[0], group_name=fields[1]))
            except ValueError as e:
                logger.warning("%s:%d: %s; skipped", Path(path).name, line, e)
        logger.info("Parsed %d lab result groups from %s", len(groups), path)
        return groups

    def read_english_names(self, path: Path) -> Dict[str, str]:
        """LabResults(EN).csv: result id in column 1, English name in column 6."""
        _, rows = self._read(path)
        names = {}
        for line, fields in rows:
            if len(fields) <= self.ENGLISH_NAME_COLUMN:
                logger.warning("%s:%d: expected %d fields, got %d; skipped",
                               Path(path).name, line, self.ENGLISH_NAME_COLUMN + 1, len(fields))
                continue
            result_id, english = fields[0], fields[self.ENGLISH_NAME_COLUMN]
            if not result_id or not english:
                logger.warning("%s:%d: blank result id or English name; skipped", Path(path).name, line)
                continue
            names[result_id] = english
        logger.info("Parsed %d English names from %s", len(names), path)
        return names

    def read_lab_results(self, path: Path, english_names: Optional[Dict[str, str]] = None) -> List[LabResult]:
        """
        LabResult.csv: ResultID,GroupID,PatientID,ResultName[,Unit]

        Empty group / patient references become None. A missing result name
        falls back to the English name; a missing English name falls back to
        the result name.
        """
        english_names = english_names or {}
        _, rows = self._read(path)
        results = []
        for line, fields in rows:
            if len(fields) < 4:
                logger.warning("%s:%d: expected at least 4 fields, got %d; skipped",
                               Path(path).name, line, len(fields))
                continue
            result_id, group_id, patient_id, result_name = fields[:4]
            unit = fields[4] if len(fields) > 4 else ""
            english = english_names.get(result_id, result_name)
            try:
                results.append(LabResult(
                    result_id=result_id,
                    result_name=result_name or english,
                    group_id=group_id or None,
                    patient_id=patient_id or None,
                    unit=unit,
                    result_name_english=english,
                ))
            except ValueError as e:
                logger.warning("%s:%d: %s; skipped", Path(path).name, line, e)
        logger.info("Parsed %d lab results from %s", len(results), path)
        return results

    def read_measurements(self, path: Path) -> List[Measurement]:
        """Measurement.csv: MeasurementID,ResultID,DateTime,Value"""
        _, rows = self._read(path)
        measurements = []
        for line, fields in rows:
            if len(fields) < 4:
                logger.warning("%s:%d: expected 4 fields, got %d; skipped", Path(path).name, line, len(fields))
                continue
            measurement_id, result_id, raw_date, value = fields[:4]
            if not value:
                logger.warning("%s:%d: blank value; skipped", Path(path).name, line)
                continue
            date_time = parse_csv_datetime(raw_date)
            if date_time is None:
                logger.warning("%s:%d: invalid date %r; skipped", Path(path).name, line, raw_date)
                continue
            try:
                measurements.append(Measurement(
                    measurement_id=measurement_id,
                    result_id=result_id,
                    date_time=date_time,
                    value=value,
                ))
            except ValueError as e:
                logger.warning("%s:%d: %s; skipped", Path(path).name, line, e)
        logger.info("Parsed %d measurements from %s", len(measurements), path)
        return measurements

    def read_cmas_scores(self, path: Path, patient_id: str = CMAS_PATIENT_ID) -> List[CMASScore]:
        """
        CMAS.csv, wide layout.

        The header holds one date per column after the first; each following
        row starts with a label and carries one score per date column. Every
        non-blank cell becomes a score for *patient_id*, ordered by date
        column then row.
        """
        header, rows = self._read(path)
        if len(header) < 2:
            logger.warning("Invalid CMAS header in %s: %r", path, header)
            return []

        dates = [parse_csv_date(cell) if cell else None for cell in header[1:]]
        for cell, parsed in zip(header[1:], dates):
            if cell and parsed is None:
                logger.warning("%s: invalid date %r in header; column skipped", Path(path).name, cell)

        score_rows = []
        for line, fields in rows:
            if len(fields) < 2 or not fields[0]:
                logger.warning("%s:%d: missing label or scores; skipped", Path(path).name, line)
                continue
            score_rows.append((line, fields[1:]))

        scores = []
        for column, date in enumerate(dates):
            if date is None:
                continue
            for line, values in score_rows:
                if column >= len(values) or not values[column]:
                    continue
                raw = values[column]
                try:
                    scores.append(CMASScore(patient_id=patient_id, date=date, score=float(raw)))
                except ValueError as e:
                    logger.warning("%s:%d: invalid score %r (%s); skipped", Path(path).name, line, raw, e)
        logger.info("Parsed %d CMAS scores from %s", len(scores), path)
        return scores
