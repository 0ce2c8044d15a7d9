"""
Voice Call Flow Generator: builds the instruction list the provider executes.

A flow is an ordered list of instructions (speak, collect digits, record,
connect) that serializes to a Vonage NCCO. ``build_flow`` is a pure
function of the call and the lifecycle stage: no I/O, no clock, no state.

Stages:
  deliver-code        greeting with the code spelled out, then collect digits
  confirm-success     spoken confirmation, terminal
  confirm-failure     rejection + code restated, then collect digits again
  attempts-exhausted  goodbye, optionally connect to the transfer number
  not-found           benign message for callbacks about unknown calls
  apology             generic message when a callback handler fails

Localization is a closed mapping; unknown languages use DEFAULT_LANGUAGE.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from models.schemas import CallRecord

DEFAULT_LANGUAGE = "en-US"
DTMF_TIMEOUT_S = 10
DTMF_TERMINATOR = "#"


class FlowStage(str, Enum):
    DELIVER_CODE = "deliver-code"
    CONFIRM_SUCCESS = "confirm-success"
    CONFIRM_FAILURE = "confirm-failure"
    ATTEMPTS_EXHAUSTED = "attempts-exhausted"
    NOT_FOUND = "not-found"
    APOLOGY = "apology"


# ══════════════════════════════════════════════════════════════
#  INSTRUCTIONS
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Speak:
    text: str
    language: str = DEFAULT_LANGUAGE
    style: int = 1

    def to_ncco(self) -> dict[str, Any]:
        return {
            "action": "talk",
            "text": self.text,
            "language": self.language,
            "style": self.style,
        }


@dataclass(frozen=True)
class CollectDigits:
    max_digits: int
    event_url: str
    timeout_s: int = DTMF_TIMEOUT_S
    terminator: str = DTMF_TERMINATOR

    def to_ncco(self) -> dict[str, Any]:
        return {
            "action": "input",
            "type": ["dtmf"],
            "dtmf": {
                "maxDigits": self.max_digits,
                "timeOut": self.timeout_s,
                "submitOnHash": self.terminator == "#",
            },
            "eventUrl": [self.event_url],
            "eventMethod": "POST",
        }


@dataclass(frozen=True)
class Record:
    event_url: str
    format: str = "mp3"

    def to_ncco(self) -> dict[str, Any]:
        return {
            "action": "record",
            "eventUrl": [self.event_url],
            "eventMethod": "POST",
            "format": self.format,
        }


@dataclass(frozen=True)
class Connect:
    number: str
    from_number: str = ""

    def to_ncco(self) -> dict[str, Any]:
        ncco: dict[str, Any] = {
            "action": "connect",
            "endpoint": [{"type": "phone", "number": self.number}],
        }
        if self.from_number:
            ncco["from"] = self.from_number
        return ncco


Instruction = Union[Speak, CollectDigits, Record, Connect]
Flow = list[Instruction]


def to_ncco(flow: Flow) -> list[dict[str, Any]]:
    return [instruction.to_ncco() for instruction in flow]


# ══════════════════════════════════════════════════════════════
#  LOCALIZATION
# ══════════════════════════════════════════════════════════════

MESSAGES: dict[str, dict[str, str]] = {
    "en-US": {
        "greeting": "Hello! Your verification code is: {code}. Please press the digits to verify.",
        "success": "Thank you! Your code is verified.",
        "failure": "Sorry, incorrect. Your code is: {code}. Try again.",
        "exhausted": "Sorry, too many incorrect attempts. Goodbye.",
        "transfer": "Sorry, too many incorrect attempts. Please hold while we transfer you.",
        "not_found": "Call not found.",
        "apology": "An error occurred.",
    },
    "es-ES": {
        "greeting": "¡Hola! Su código es: {code}. Presione los dígitos.",
        "success": "¡Gracias! Su código está verificado.",
        "failure": "Lo siento, incorrecto. Su código es: {code}.",
        "exhausted": "Lo siento, demasiados intentos incorrectos. Adiós.",
        "transfer": "Lo siento, demasiados intentos incorrectos. Espere mientras le transferimos.",
        "not_found": "Llamada no encontrada.",
        "apology": "Se produjo un error.",
    },
    "fr-FR": {
        "greeting": "Bonjour! Votre code est: {code}. Appuyez sur les chiffres.",
        "success": "Merci! Votre code est vérifié.",
        "failure": "Désolé, incorrect. Votre code est: {code}.",
        "exhausted": "Désolé, trop de tentatives incorrectes. Au revoir.",
        "transfer": "Désolé, trop de tentatives incorrectes. Veuillez patienter, nous vous transférons.",
        "not_found": "Appel introuvable.",
        "apology": "Une erreur est survenue.",
    },
    "de-DE": {
        "greeting": "Hallo! Ihr Code lautet: {code}. Drücken Sie die Ziffern.",
        "success": "Vielen Dank! Ihr Code ist verifiziert.",
        "failure": "Entschuldigung, falsch. Ihr Code: {code}.",
        "exhausted": "Entschuldigung, zu viele falsche Versuche. Auf Wiederhören.",
        "transfer": "Entschuldigung, zu viele falsche Versuche. Bitte warten Sie, wir verbinden Sie.",
        "not_found": "Anruf nicht gefunden.",
        "apology": "Ein Fehler ist aufgetreten.",
    },
}


def resolve_language(language: Optional[str]) -> str:
    """Return ``language`` if it has templates, else the default locale."""
    return language if language in MESSAGES else DEFAULT_LANGUAGE


def spell_out_digits(code: str) -> str:
    """
    "1234" → "1, 2, 3, 4".

    TTS engines read "1234" as "one thousand two hundred…"; enumerating the
    digits makes each one a separate utterance.
    """
    return ", ".join(code)


def message(language: Optional[str], key: str, **kwargs: Any) -> str:
    template = MESSAGES[resolve_language(language)][key]
    return template.format(**kwargs)


# ══════════════════════════════════════════════════════════════
#  FLOW BUILDER
# ══════════════════════════════════════════════════════════════

def dtmf_callback_url(base_url: str, call_id: str) -> str:
    return f"{base_url.rstrip('/')}/calls/{call_id}/dtmf-callback"


def recording_callback_url(base_url: str, call_id: str) -> str:
    return f"{base_url.rstrip('/')}/calls/{call_id}/recording-callback"


def build_flow(
    call: Optional[CallRecord],
    stage: FlowStage,
    base_url: str = "",
    *,
    dtmf_timeout_s: int = DTMF_TIMEOUT_S,
    record: bool = False,
    transfer_from: str = "",
) -> Flow:
    """
    Build the instruction list for ``stage``.

    ``call`` may be None only for NOT_FOUND and APOLOGY. ``record`` prepends
    a Record instruction to deliver-code so the call audio can be
    transcribed afterwards. ``transfer_from`` is the caller ID used when
    attempts-exhausted connects to the call's transfer number.
    """
    if stage in (FlowStage.NOT_FOUND, FlowStage.APOLOGY):
        language = resolve_language(call.language if call else None)
        key = "not_found" if stage == FlowStage.NOT_FOUND else "apology"
        return [Speak(message(language, key), language=language)]

    if call is None:
        raise ValueError(f"Stage {stage.value} requires a call")

    language = resolve_language(call.language)
    code = spell_out_digits(call.otp_code)
    collect = CollectDigits(
        max_digits=len(call.otp_code),
        event_url=dtmf_callback_url(base_url, call.id),
        timeout_s=dtmf_timeout_s,
    )

    if stage == FlowStage.DELIVER_CODE:
        flow: Flow = []
        if record:
            flow.append(Record(event_url=recording_callback_url(base_url, call.id)))
        flow.append(Speak(message(language, "greeting", code=code), language=language))
        flow.append(collect)
        return flow

    if stage == FlowStage.CONFIRM_SUCCESS:
        return [Speak(message(language, "success"), language=language)]

    if stage == FlowStage.CONFIRM_FAILURE:
        return [
            Speak(message(language, "failure", code=code), language=language),
            collect,
        ]

    if stage == FlowStage.ATTEMPTS_EXHAUSTED:
        if call.transfer_number:
            return [
                Speak(message(language, "transfer"), language=language),
                Connect(number=call.transfer_number, from_number=transfer_from),
            ]
        return [Speak(message(language, "exhausted"), language=language)]

    raise ValueError(f"Unknown flow stage: {stage}")
