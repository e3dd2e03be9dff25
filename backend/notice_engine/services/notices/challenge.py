"""
Acknowledgment Challenge

Before a read can be confirmed, the employee types one fact from the
notice: the measure applied, the suspension length, or the incident
date. The field is chosen at random (the measure itself weighs more) and
answers are matched leniently: accents, case and punctuation are ignored,
numbers may be written in words, dates in any common day-first format.
A measure answer is accepted only when it is closer to the notice's own
measure than to any other, so "apercibimiento" never confirms a
pre-dismissal warning.
"""
import difflib
import random
import re
import unicodedata
from datetime import date
from typing import Dict, List, Optional

from dateutil import parser as date_parser

from ...models.db_models import NoticeCategory, NoticeDB

FIELD_SANCTION_TYPE = "sanction_type"
FIELD_DURATION = "duration"
FIELD_INCIDENT_DATE = "incident_date"

FIELD_WEIGHTS = {
    FIELD_SANCTION_TYPE: 50,
    FIELD_DURATION: 25,
    FIELD_INCIDENT_DATE: 25,
}

QUESTIONS = {
    FIELD_SANCTION_TYPE: {
        "question": "Indique la sancion o medida mencionada en el documento",
        "example": "Ej: apercibimiento, suspension",
    },
    FIELD_DURATION: {
        "question": "Indique la cantidad de dias mencionada",
        "example": "Ej: 3 dias",
    },
    FIELD_INCIDENT_DATE: {
        "question": "Indique la fecha del hecho sancionado",
        "example": "Ej: 10/01/2026",
    },
}

CATEGORY_ANSWERS = {
    NoticeCategory.WARNING: ["apercibimiento", "advertencia", "amonestacion", "llamado de atencion", "warning"],
    NoticeCategory.SUSPENSION: ["suspension", "suspendido", "suspension disciplinaria", "suspension sin goce"],
    NoticeCategory.PRE_DISMISSAL_WARNING: [
        "apercibimiento previo al despido",
        "advertencia previa al despido",
        "preaviso de despido",
        "ultimo apercibimiento",
        "pre despido",
    ],
}

NUMBER_WORDS = {
    "un": 1, "uno": 1, "una": 1, "dos": 2, "tres": 3, "cuatro": 4, "cinco": 5,
    "seis": 6, "siete": 7, "ocho": 8, "nueve": 9, "diez": 10, "once": 11,
    "doce": 12, "trece": 13, "catorce": 14, "quince": 15, "dieciseis": 16,
    "diecisiete": 17, "dieciocho": 18, "diecinueve": 19, "veinte": 20,
    "veintiuno": 21, "veintidos": 22, "veintitres": 23, "veinticuatro": 24,
    "veinticinco": 25, "veintiseis": 26, "veintisiete": 27, "veintiocho": 28,
    "veintinueve": 29, "treinta": 30,
}

SPANISH_MONTHS = {
    "enero": "january", "febrero": "february", "marzo": "march", "abril": "april",
    "mayo": "may", "junio": "june", "julio": "july", "agosto": "august",
    "septiembre": "september", "setiembre": "september", "octubre": "october",
    "noviembre": "november", "diciembre": "december",
}

ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
LEADING_ARTICLE = re.compile(r"^(la|el|un|una) ")
FUZZY_RATIO = 0.8


def normalize_answer(value: Optional[str]) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""
    text = unicodedata.normalize("NFKD", value or "")
    text = "".join(c for c in text if not unicodedata.combining(c)).lower()
    text = re.sub(r"[^a-z0-9/\-\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def available_fields(notice: NoticeDB) -> List[str]:
    fields = [FIELD_SANCTION_TYPE]
    if notice.category == NoticeCategory.SUSPENSION and notice.suspension_days:
        fields.append(FIELD_DURATION)
    if notice.incident_date:
        fields.append(FIELD_INCIDENT_DATE)
    return fields


def choose_field(notice: NoticeDB, rng: Optional[random.Random] = None, exclude: Optional[str] = None) -> str:
    rng = rng or random.SystemRandom()
    fields = [f for f in available_fields(notice) if f != exclude] or available_fields(notice)
    return rng.choices(fields, weights=[FIELD_WEIGHTS[f] for f in fields], k=1)[0]


def question_for(field: str) -> Dict[str, str]:
    return {"field": field, **QUESTIONS[field]}


# =============================================================================
# ANSWER PARSING
# =============================================================================

def parse_number(answer: str) -> Optional[int]:
    text = normalize_answer(answer)
    digits = re.search(r"\d+", text)
    if digits:
        return int(digits.group())
    for word in text.split():
        if word in NUMBER_WORDS:
            return NUMBER_WORDS[word]
    return None


def parse_date(answer: str) -> Optional[date]:
    text = normalize_answer(answer)
    if not text:
        return None

    iso = ISO_DATE.search(text)
    if iso:
        try:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        except ValueError:
            return None

    for spanish, english in SPANISH_MONTHS.items():
        text = re.sub(rf"\b{spanish}\b", english, text)
    text = re.sub(r"\bde(l)?\b", " ", text)

    try:
        return date_parser.parse(text, dayfirst=True, fuzzy=True).date()
    except (ValueError, OverflowError):
        return None


def _phrase_score(text: str, candidates: List[str]) -> float:
    """Best whole-answer similarity against a list of phrases (1.0 is exact)."""
    return max((difflib.SequenceMatcher(None, text, c).ratio() for c in candidates), default=0.0)


def sanction_matches(category: NoticeCategory, answer: str) -> bool:
    text = LEADING_ARTICLE.sub("", normalize_answer(answer))
    if not text:
        return False
    scores = {cat: _phrase_score(text, phrases) for cat, phrases in CATEGORY_ANSWERS.items()}
    own = scores.get(category, 0.0)
    if own < FUZZY_RATIO:
        return False
    # Ties go against the employee's answer
    return all(own > score for cat, score in scores.items() if cat != category)


def answer_matches(notice: NoticeDB, field: str, answer: str) -> bool:
    if field == FIELD_SANCTION_TYPE:
        return sanction_matches(notice.category, answer)
    if field == FIELD_DURATION:
        return notice.suspension_days is not None and parse_number(answer) == notice.suspension_days
    if field == FIELD_INCIDENT_DATE:
        return notice.incident_date is not None and parse_date(answer) == notice.incident_date
    return False
