"""Enrollment levels and the phrase lists read aloud during enrollment."""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List


class EnrollmentLevel(str, Enum):
    """How thoroughly a speaker is enrolled."""

    STANDARD = "standard"
    ADVANCED = "advanced"


@dataclass(frozen=True)
class EnrollmentConfig:
    level: EnrollmentLevel
    phrases_count: int
    description: str
    benefits: List[str]
    estimated_time: str


ENROLLMENT_CONFIGS: Dict[EnrollmentLevel, EnrollmentConfig] = {
    EnrollmentLevel.STANDARD: EnrollmentConfig(
        level=EnrollmentLevel.STANDARD,
        phrases_count=6,
        description="Standard training with 5-7 phrases",
        benefits=[
            "Good accuracy in normal environments",
            "Tells your voice apart from other people",
            "Filters moderate noise",
            "Quick setup (~1-2 minutes)",
        ],
        estimated_time="1-2 minutes",
    ),
    EnrollmentLevel.ADVANCED: EnrollmentConfig(
        level=EnrollmentLevel.ADVANCED,
        phrases_count=12,
        description="Advanced training with 10+ phrases",
        benefits=[
            "High accuracy in noisy environments",
            "Better separation of similar voices",
            "Robust noise filtering",
            "Suited to professional use",
            "More tolerant of voice variation",
        ],
        estimated_time="3-5 minutes",
    ),
}

DEFAULT_LANGUAGE = "pt-BR"

ENROLLMENT_PHRASES: Dict[str, List[str]] = {
    "pt-BR": [
        "O sol nasce no leste e se põe no oeste todos os dias.",
        "A tecnologia avança rapidamente no mundo moderno.",
        "Segurança da informação é fundamental para empresas.",
        "Minha voz é única e serve como minha identificação.",
        "Inteligência artificial transforma o modo como trabalhamos.",
        "O reconhecimento de voz facilita a interação com sistemas.",
        "Dados precisam ser protegidos contra acessos não autorizados.",
        "A qualidade do áudio influencia o reconhecimento de fala.",
        "Autenticação biométrica oferece segurança adicional.",
        "Processos automatizados aumentam a produtividade.",
        "Comunicação clara é essencial em qualquer ambiente.",
        "Inovação constante impulsiona o crescimento das organizações.",
    ],
    "en-US": [
        "The sun rises in the east and sets in the west every day.",
        "Technology advances rapidly in the modern world.",
        "Information security is fundamental for businesses.",
        "My voice is unique and serves as my identification.",
        "Artificial intelligence transforms the way we work.",
        "Voice recognition facilitates interaction with systems.",
        "Data needs to be protected against unauthorized access.",
        "Audio quality influences speech recognition accuracy.",
        "Biometric authentication offers additional security.",
        "Automated processes increase productivity.",
        "Clear communication is essential in any environment.",
        "Constant innovation drives organizational growth.",
    ],
    "es-ES": [
        "El sol sale por el este y se pone por el oeste cada día.",
        "La tecnología avanza rápidamente en el mundo moderno.",
        "La seguridad de la información es fundamental para las empresas.",
        "Mi voz es única y sirve como mi identificación.",
        "La inteligencia artificial transforma la forma en que trabajamos.",
        "El reconocimiento de voz facilita la interacción con sistemas.",
        "Los datos deben protegerse contra accesos no autorizados.",
        "La calidad del audio influye en el reconocimiento del habla.",
        "La autenticación biométrica ofrece seguridad adicional.",
        "Los procesos automatizados aumentan la productividad.",
        "La comunicación clara es esencial en cualquier entorno.",
        "La innovación constante impulsa el crecimiento organizacional.",
    ],
}


def get_phrases_for_level(level: EnrollmentLevel, language: str = DEFAULT_LANGUAGE) -> List[str]:
    """Return the phrases a speaker reads for the given level and language."""
    phrases = ENROLLMENT_PHRASES.get(language) or ENROLLMENT_PHRASES[DEFAULT_LANGUAGE]
    count = ENROLLMENT_CONFIGS[EnrollmentLevel(level)].phrases_count
    return phrases[:count]
