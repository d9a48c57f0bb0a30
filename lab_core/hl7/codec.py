# lab_core/hl7/codec.py
"""
HL7 v2 (ORU^R01 style) codec for analyser exchanges.

Field layout, both directions:

    MSH-7  timestamp          MSH-9  message type       MSH-10 control id
    PID-3  patient id (PID-2 fallback)   PID-5 name   PID-7 DOB   PID-8 sex
    OBR-2  order number       OBR-3  barcode            OBR-24 instrument id
    OBX-1  sequence           OBX-3  <code>^<code>^L    OBX-5  value
    OBX-6  unit               OBX-7  reference range    OBX-8  abnormal flag

Parsing leans on python-hl7 for segment/field splitting. Numeric OBX values
are lenient by default: anything that is not a number becomes 0.0 and the
observation is marked ``value_malformed``. Pass ``strict=True`` to raise
instead.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable

import hl7
from django.utils import timezone

logger = logging.getLogger(__name__)

SEGMENT_SPLIT_RE = re.compile(r"[\r\n]+")
SEGMENT_TERMINATOR = "\r"
ENCODING_CHARACTERS = "^~\\&"

RECEIVING_APPLICATION = "TestOrderService"
RECEIVING_FACILITY = "Lab"
HL7_VERSION = "2.3"

OBR_INSTRUMENT_FIELD = 24


class HL7ParseError(ValueError):
    pass


@dataclass(frozen=True)
class MessageHeader:
    message_type: str = ""
    message_id: str = ""
    timestamp: str = ""


@dataclass(frozen=True)
class PatientInfo:
    patient_id: str = ""
    name: str = ""
    date_of_birth: str = ""
    sex: str = ""


@dataclass(frozen=True)
class OrderInfo:
    order_number: str = ""
    barcode: str = ""
    instrument_id: str = ""


@dataclass(frozen=True)
class Observation:
    parameter_code: str
    value: float
    unit: str = ""
    reference_range: str = ""
    abnormal_flag: str = "N"
    sequence: int = 0
    value_malformed: bool = False


@dataclass
class ParsedExchange:
    header: MessageHeader = field(default_factory=MessageHeader)
    patient: PatientInfo = field(default_factory=PatientInfo)
    order: OrderInfo = field(default_factory=OrderInfo)
    observations: list[Observation] = field(default_factory=list)


def _field(segment, index: int) -> str:
    if index >= len(segment):
        return ""
    return str(segment[index]).strip()


def _first_component(value: str) -> str:
    return value.split("^", 1)[0].strip()


def _parse_number(raw: str, *, strict: bool, code: str) -> tuple[float, bool]:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        value = math.nan
    if math.isfinite(value):
        return value, False

    if strict:
        raise HL7ParseError(f"Malformed numeric value {raw!r} for {code or 'observation'}")
    logger.warning("HL7 OBX %s: malformed numeric value %r coerced to 0", code or "?", raw)
    return 0.0, True


def _parse_int(raw: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


def split_segments(message: str) -> list[str]:
    return [s for s in SEGMENT_SPLIT_RE.split(message or "") if s.strip()]


def parse_message(message: str, *, strict: bool = False) -> ParsedExchange:
    """
    Decode an instrument exchange. Unknown segment types are ignored.
    """
    segments = split_segments(message)
    if not segments or not segments[0].startswith("MSH") or len(segments[0]) < 8:
        raise HL7ParseError("Message must start with an MSH segment")

    msg = hl7.parse(SEGMENT_TERMINATOR.join(segments))
    out = ParsedExchange()

    for segment in msg:
        tag = _field(segment, 0)

        if tag == "MSH":
            # python-hl7 keeps MSH numbering aligned with the standard (MSH-1 is "|")
            out.header = MessageHeader(
                message_type=_field(segment, 9),
                message_id=_field(segment, 10),
                timestamp=_field(segment, 7),
            )
        elif tag == "PID":
            out.patient = PatientInfo(
                patient_id=_field(segment, 3) or _field(segment, 2),
                name=_field(segment, 5),
                date_of_birth=_field(segment, 7),
                sex=_field(segment, 8),
            )
        elif tag == "OBR":
            out.order = OrderInfo(
                order_number=_field(segment, 2),
                barcode=_field(segment, 3),
                instrument_id=_field(segment, OBR_INSTRUMENT_FIELD),
            )
        elif tag == "OBX":
            code = _first_component(_field(segment, 3))
            value, malformed = _parse_number(_field(segment, 5), strict=strict, code=code)
            out.observations.append(
                Observation(
                    sequence=_parse_int(_field(segment, 1)),
                    parameter_code=code,
                    value=value,
                    unit=_field(segment, 6),
                    reference_range=_field(segment, 7),
                    abnormal_flag=_field(segment, 8) or "N",
                    value_malformed=malformed,
                )
            )

    return out


# -------------------------------------------------------------------
# Generation
# -------------------------------------------------------------------

def _ts(value: datetime) -> str:
    if timezone.is_aware(value):
        value = timezone.localtime(value)
    return value.strftime("%Y%m%d%H%M%S")


def _hl7_date(value) -> str:
    if isinstance(value, datetime):
        return value.strftime("%Y%m%d")
    if isinstance(value, date):
        return value.strftime("%Y%m%d")
    return ""


def _hl7_sex(value: str | None) -> str:
    v = (value or "").strip().lower()
    if v in ("m", "male"):
        return "M"
    if v in ("f", "female"):
        return "F"
    return "U" if v else ""


def format_value(value: float) -> str:
    """Shortest text that float() maps back to the same value."""
    value = float(value)
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def _segment(*fields) -> str:
    return "|".join("" if f is None else str(f) for f in fields)


def generate_message(
    *,
    order,
    observations: Iterable[Observation],
    instrument=None,
    patient=None,
    now: datetime | None = None,
) -> str:
    """
    Encode an order and its observations as MSH/PID/OBR followed by one OBX
    per observation, in input order. ``order`` needs ``barcode`` and
    ``order_number``; ``instrument`` and ``patient`` are optional.
    """
    now = now or timezone.now()
    stamp = _ts(now)
    sending_app = getattr(instrument, "name", "") or "Instrument"
    instrument_id = getattr(instrument, "id", "") or ""

    msh = _segment(
        "MSH",
        ENCODING_CHARACTERS,
        sending_app,
        getattr(instrument, "serial_number", "") or "",
        RECEIVING_APPLICATION,
        RECEIVING_FACILITY,
        stamp,
        "",
        "ORU^R01",
        f"MSG{int(now.timestamp() * 1000)}",
        "P",
        HL7_VERSION,
    )
    pid = _segment(
        "PID",
        "1",
        "",
        getattr(patient, "id", "") or "",
        "",
        getattr(patient, "full_name", "") or "",
        "",
        _hl7_date(getattr(patient, "date_of_birth", None)),
        _hl7_sex(getattr(patient, "gender", None)),
    )

    obr_fields = [""] * (OBR_INSTRUMENT_FIELD + 1)
    obr_fields[0] = "OBR"
    obr_fields[1] = "1"
    obr_fields[2] = order.order_number or ""
    obr_fields[3] = order.barcode or ""
    obr_fields[7] = stamp
    obr_fields[OBR_INSTRUMENT_FIELD] = instrument_id
    obr = _segment(*obr_fields)

    lines = [msh, pid, obr]
    for seq, obs in enumerate(observations, start=1):
        lines.append(
            _segment(
                "OBX",
                seq,
                "NM",
                f"{obs.parameter_code}^{obs.parameter_code}^L",
                "",
                format_value(obs.value),
                obs.unit,
                obs.reference_range,
                obs.abnormal_flag or "N",
                "",
                "",
                "F",
                "",
                "",
                stamp,
            )
        )

    return SEGMENT_TERMINATOR.join(lines)


class HL7Codec:
    """
    Injectable facade over parse_message/generate_message carrying the
    numeric parsing mode.
    """

    def __init__(self, *, strict: bool = False):
        self.strict = strict

    def parse(self, message: str) -> ParsedExchange:
        return parse_message(message, strict=self.strict)

    def generate(self, *, order, observations: Iterable[Observation], instrument=None, patient=None, now=None) -> str:
        return generate_message(order=order, observations=observations, instrument=instrument, patient=patient, now=now)
