"""WhatsApp texts sent to owners. Greeting and sign-off vary per message."""
from __future__ import annotations

import random
from typing import Optional

from models.schemas import RegistrationStatus

GREETINGS = ["Olá", "Oi", "E aí", "Oie"]
SIGN_OFFS = [
    "🐾 Castração é um gesto de amor!",
    "🐾 Cuide de quem te ama!",
    "🐾 Seu pet agradece!",
    "🐾 Juntos pelo bem-estar animal!",
]


def _frame(owner_name: str, body: str, campaign: str, rng: random.Random) -> str:
    return (
        f"*{campaign}* 🐾\n\n"
        f"{rng.choice(GREETINGS)}, *{owner_name}*!\n\n"
        f"{body}\n\n"
        f"{rng.choice(SIGN_OFFS)}"
    )


_STATUS_BODIES = {
    RegistrationStatus.PENDING: (
        "Recebemos o cadastro do seu pet *{pet}*. Ele está na fila de atendimento "
        "e avisaremos assim que houver data marcada."
    ),
    RegistrationStatus.SCHEDULED: (
        "O atendimento do seu pet *{pet}* foi *agendado*. "
        "Fique atento às orientações que enviaremos por aqui."
    ),
    RegistrationStatus.DONE: (
        "O procedimento do seu pet *{pet}* foi *realizado*. Obrigado por participar!"
    ),
    RegistrationStatus.CANCELLED: (
        "O cadastro do seu pet *{pet}* foi *cancelado*. "
        "Em caso de dúvidas, responda esta mensagem."
    ),
    RegistrationStatus.WAITLIST: (
        "As vagas da sua cidade estão esgotadas no momento. O seu pet *{pet}* "
        "entrou na *lista de espera* e avisaremos se uma vaga for liberada."
    ),
}


def status_message(
    status: RegistrationStatus,
    owner_name: str,
    pet_name: str,
    campaign: str = "Castra+MG",
    rng: Optional[random.Random] = None,
) -> str:
    body = _STATUS_BODIES[status].format(pet=pet_name)
    return _frame(owner_name, body, campaign, rng or random.Random())
