"""Shared test doubles.

StubTurnService replays scripted TurnResponses (or raises scripted errors)
and records every TurnRequest it receives. StubImageService does the same for
image prompts.
"""

import asyncio

import pytest

from rapport.models import OpeningResponse, Scenario, TurnRequest, TurnResponse, Visuals
from rapport.services import TurnServiceError
from rapport.session import Conversation

VISUALS = Visuals(
    character_description="a woman in her late twenties with short dark hair",
    clothing_description="a green raincoat",
    environment_description="a busy coffee shop",
    current_pose_and_action="leaning on the counter",
)


class StubTurnService:
    def __init__(self, opening: OpeningResponse | None = None) -> None:
        self.opening = opening or OpeningResponse(
            ai_name="Mara",
            initial_dialogue_chunks=[{"text": "Crazy weather, huh?", "type": "dialogue"}],
            initial_body_language="shaking rain off her coat",
            initial_engagement_score=30,
            established_visuals=VISUALS,
        )
        self.responses: list[TurnResponse | Exception] = []
        self.requests: list[TurnRequest] = []
        self.gate: asyncio.Event | None = None

    def queue(self, *responses: TurnResponse | Exception) -> None:
        self.responses.extend(responses)

    async def start_conversation(self, scenario: Scenario) -> OpeningResponse:
        return self.opening

    async def next_turn(self, request: TurnRequest) -> TurnResponse:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if not self.responses:
            raise TurnServiceError("No scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class StubImageService:
    def __init__(self) -> None:
        self.results: list[str | Exception] = []
        self.prompts: list[str] = []
        self.gate: asyncio.Event | None = None  # set by tests to hold images back
        self.counter = 0

    def queue(self, *results: str | Exception) -> None:
        self.results.extend(results)

    async def __call__(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        self.counter += 1
        return f"image-{self.counter}"


@pytest.fixture
def turn_service() -> StubTurnService:
    return StubTurnService()


@pytest.fixture
def image_service() -> StubImageService:
    return StubImageService()


@pytest.fixture
async def conversation(turn_service, image_service):
    conv = Conversation(turn_service, image_service)
    yield conv
    await conv.aclose()


@pytest.fixture
async def started(conversation):
    """A conversation opened on a casual scenario; opening image is image-1."""
    await conversation.start(Scenario(ai_name="Mara"))
    return conversation


@pytest.fixture
def visuals() -> Visuals:
    return VISUALS
