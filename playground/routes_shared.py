from contextlib import aclosing

from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from playground.services.orchestrator import GenerationRequest, StreamingOrchestrator
from playground.sse import DONE_FRAME, CompleteEvent, encode_event

ORCHESTRATOR = StreamingOrchestrator()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_orchestrator() -> StreamingOrchestrator:
    return ORCHESTRATOR


def stream_generation(orchestrator: StreamingOrchestrator, req: GenerationRequest, owner_id: int) -> StreamingResponse:
    """
    Claim the generation slot now (AlreadyGeneratingError surfaces as 409 before
    any bytes are sent), then stream the run as SSE frames. ``[DONE]`` follows
    ``complete`` only; error and abort close the stream without it.
    """
    gen = orchestrator.start(req, owner_id=owner_id)

    async def body():
        async with aclosing(orchestrator.run(gen, req)) as events:
            async for event in events:
                yield encode_event(event)
                if isinstance(event, CompleteEvent):
                    yield DONE_FRAME

    return StreamingResponse(
        body(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        # frees the slot even if the body was never iterated
        background=BackgroundTask(orchestrator.release, gen.id),
    )
