"""
Puzzle Batch Orchestrator

Turns one uploaded source image plus a prompt per subject into one
generated image per puzzle piece. Pieces run strictly one at a time
because the remote queue is FIFO with a single worker; each piece moves

    pending -> generating -> complete | error

and a failing piece never aborts the batch. Completion of each job is
observed in one of three ways:

- events:  shared event channel sentinel, then history for the artifacts
- polling: history only
- stream:  images captured from the SaveImageWebsocket node's binary frames
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from backend.comfyui_errors import ChannelConnectError, ComfyUIError, NoArtifactsError
from backend.comfyui_utils import (
    CAPTURE_NODE_ID,
    PIECE_INJECTION_POINTS,
    PROMPT_INJECTION_POINTS,
    build_piece_workflow,
    build_prompt_workflow,
    random_seed,
)
from backend.event_channel import EventChannel, WebSocketChannel
from backend.execution_tracker import ChannelSession
from backend.graph_template import (
    Graph,
    InjectionPoints,
    apply_parameters,
    detect_injection_points,
    load_template,
)
from backend.result_materializer import Asset, ResultMaterializer, build_asset_urls
from backend.stream_collector import BinaryStreamCollector
from core.signals import Signal

logger = logging.getLogger("puzzle.batch")

COMPLETION_MODES = ("events", "polling", "stream")


class PieceStatus(Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class PuzzlePiece:
    """One subject of a multi-subject batch."""
    id: int
    subject_id: int
    prompt: str
    status: PieceStatus = PieceStatus.PENDING
    image_url: Optional[str] = None
    error: Optional[str] = None
    job_id: Optional[str] = None
    # Set when the image came from a stream that closed before the sentinel
    unconfirmed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "prompt": self.prompt,
            "status": self.status.value,
            "image_url": self.image_url,
            "error": self.error,
            "job_id": self.job_id,
            "unconfirmed": self.unconfirmed,
        }


@dataclass
class BatchProgress:
    current: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"current": self.current, "total": self.total}


@dataclass
class JobRecord:
    """Outcome of one prompt in run_prompts()."""
    request: str
    job_id: Optional[str] = None
    status: str = "queued"  # queued / complete / error
    artifacts: List[Asset] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request": self.request,
            "job_id": self.job_id,
            "status": self.status,
            "artifacts": [a.to_dict() for a in self.artifacts],
            "error": self.error,
        }


def create_pieces(prompts: List[str], subject_ids: Optional[List[int]] = None) -> List[PuzzlePiece]:
    """Pending pieces, one per prompt. Subject ids default to 1..N."""
    if subject_ids is not None and len(subject_ids) != len(prompts):
        raise ValueError("subject_ids must have one entry per prompt")
    return [
        PuzzlePiece(
            id=i + 1,
            subject_id=subject_ids[i] if subject_ids is not None else i + 1,
            prompt=prompt,
        )
        for i, prompt in enumerate(prompts)
    ]


class PuzzleBatchOrchestrator:
    """
    Sequential multi-piece generation with per-piece failure isolation.

    Signals:
        on_progress(BatchProgress): before each submission
        on_piece_updated(PuzzlePiece): after each status change
        on_error(str): structural batch failures (empty batch)
    """

    def __init__(
        self,
        client,
        template: Graph,
        injection_points: InjectionPoints = PIECE_INJECTION_POINTS,
        completion: str = "events",
        channel_factory: Callable[[], EventChannel] = WebSocketChannel,
        negative_prompt: Optional[str] = None,
        steps: Optional[int] = None,
        poll_interval: float = 1.5,
        output_timeout: float = 300.0,
        capture_node_id: str = CAPTURE_NODE_ID,
        seed_factory: Callable[[], int] = random_seed,
        prompt_template: Optional[Graph] = None,
        prompt_injection_points: Optional[InjectionPoints] = None,
    ):
        if completion not in COMPLETION_MODES:
            raise ValueError(f"Unknown completion mode '{completion}'. Available: {', '.join(COMPLETION_MODES)}")
        self.client = client
        self.template = template
        self.injection_points = injection_points
        self.completion = completion
        self.channel_factory = channel_factory
        self.negative_prompt = negative_prompt
        self.steps = steps
        self.capture_node_id = capture_node_id
        self.seed_factory = seed_factory
        # Graph for run_prompts(); defaults to the piece template
        self.prompt_template = prompt_template if prompt_template is not None else template
        if prompt_injection_points is None:
            prompt_injection_points = injection_points if prompt_template is None else detect_injection_points(prompt_template)
        self.prompt_injection_points = prompt_injection_points
        self.materializer = ResultMaterializer(client, poll_interval, output_timeout)
        self.collector = BinaryStreamCollector(client, channel_factory)

        self.pieces: List[PuzzlePiece] = []
        self.progress = BatchProgress()
        self.is_generating = False
        self.error: Optional[str] = None

        self.on_progress = Signal("batch_progress")
        self.on_piece_updated = Signal("piece_updated")
        self.on_error = Signal("batch_error")

    @classmethod
    def from_settings(cls, client, settings,
                      channel_factory: Callable[[], EventChannel] = WebSocketChannel) -> "PuzzleBatchOrchestrator":
        gen = settings.get_section("generation")
        template_path = gen.get("template_path")
        if template_path:
            template = load_template(template_path)
            points = detect_injection_points(template)
        else:
            template = build_piece_workflow(gen.get("checkpoint", ""))
            points = PIECE_INJECTION_POINTS
        prompt_template_path = gen.get("prompt_template_path")
        if prompt_template_path:
            prompt_template = load_template(prompt_template_path)
            prompt_points = detect_injection_points(prompt_template)
        else:
            prompt_template = build_prompt_workflow(gen.get("checkpoint", ""))
            prompt_points = PROMPT_INJECTION_POINTS
        return cls(
            client,
            template,
            injection_points=points,
            completion=gen.get("completion", "events"),
            channel_factory=channel_factory,
            negative_prompt=gen.get("negative_prompt"),
            steps=gen.get("steps"),
            poll_interval=float(gen.get("poll_interval", 1.5)),
            output_timeout=float(gen.get("output_timeout", 300)),
            capture_node_id=gen.get("capture_node_id", CAPTURE_NODE_ID),
            prompt_template=prompt_template,
            prompt_injection_points=prompt_points,
        )

    # ------------------------------------------------------------------ #
    # Graph preparation
    # ------------------------------------------------------------------ #

    def build_graph(self, prompt: str, image_filename: Optional[str] = None) -> Graph:
        return self._inject(self.template, self.injection_points, prompt, image_filename)

    def build_prompt_graph(self, prompt: str, image_filename: Optional[str] = None) -> Graph:
        """Graph for one run_prompts() job. Image-to-image templates need a source image."""
        if self.prompt_injection_points.load_image_nodes and not image_filename:
            raise ValueError("This prompt template loads an image; image_filename is required")
        return self._inject(self.prompt_template, self.prompt_injection_points, prompt, image_filename)

    def _inject(self, template: Graph, points: InjectionPoints, prompt: str,
                image_filename: Optional[str]) -> Graph:
        fields = points.field_map(
            image=image_filename,
            positive=prompt,
            negative=self.negative_prompt,
            seed=self.seed_factory(),
            steps=self.steps,
        )
        return apply_parameters(template, fields)

    # ------------------------------------------------------------------ #
    # Batch
    # ------------------------------------------------------------------ #

    async def generate_all(self, pieces: List[PuzzlePiece], image_filename: str) -> List[PuzzlePiece]:
        """
        Generate every piece in order; mutates and returns `pieces`.

        Every piece ends `complete` or `error`. An empty list is reported
        through `error`/on_error and returns [] without submitting anything.
        """
        if not pieces:
            self._fail("No pieces to generate")
            return []
        if self.is_generating:
            raise RuntimeError("A batch is already running")

        self.is_generating = True
        self.error = None
        self.pieces = pieces
        total = len(pieces)
        logger.info(f"Generating {total} piece(s) from {image_filename} ({self.completion})")

        session = None
        try:
            for index, piece in enumerate(pieces):
                self.progress = BatchProgress(current=index + 1, total=total)
                self.on_progress.emit(self.progress)
                session = await self._ensure_session(session)
                await self._generate_piece(piece, image_filename, session)
        finally:
            if session is not None:
                await session.close()
            self.is_generating = False

        done = sum(1 for p in pieces if p.status == PieceStatus.COMPLETE)
        logger.info(f"Batch finished: {done}/{total} complete, {total - done} failed")
        return pieces

    async def retry_piece(self, piece: PuzzlePiece, image_filename: str) -> PuzzlePiece:
        """Re-run one piece (e.g. after an error) outside a batch."""
        if self.is_generating:
            raise RuntimeError("A batch is already running")
        self.is_generating = True
        session = None
        try:
            session = await self._ensure_session(None)
            await self._generate_piece(piece, image_filename, session)
        finally:
            if session is not None:
                await session.close()
            self.is_generating = False
        return piece

    def _fail(self, message: str):
        self.error = message
        logger.error(message)
        self.on_error.emit(message)

    async def _ensure_session(self, session: Optional[ChannelSession]) -> Optional[ChannelSession]:
        """Shared channel for events mode; None means fall back to history polling."""
        if self.completion != "events":
            return None
        if session is not None and not session.closed:
            return session
        try:
            session = ChannelSession(self.channel_factory(), self.client.event_url())
            await session.connect()
        except ChannelConnectError as e:
            logger.warning(f"Event channel unavailable, polling history instead: {e}")
            return None
        except Exception as e:
            logger.warning(f"Event channel failed to open ({type(e).__name__}: {e}), polling history instead")
            return None
        return session

    async def _generate_piece(self, piece: PuzzlePiece, image_filename: str,
                              session: Optional[ChannelSession]):
        piece.status = PieceStatus.GENERATING
        piece.image_url = None
        piece.error = None
        piece.unconfirmed = False
        self.on_piece_updated.emit(piece)

        try:
            graph = self.build_graph(piece.prompt, image_filename)
            urls = await self._run_job(piece, graph, session)
            if not urls:
                raise NoArtifactsError(piece.job_id)
            piece.image_url = urls[0]
            piece.status = PieceStatus.COMPLETE
            logger.info(f"Piece {piece.id} complete (job {piece.job_id})")
        except Exception as e:
            piece.status = PieceStatus.ERROR
            piece.error = str(e) or "Generation failed"
            logger.warning(f"Piece {piece.id} failed: {piece.error}")

        self.on_piece_updated.emit(piece)

    async def _run_job(self, piece: PuzzlePiece, graph: Graph,
                       session: Optional[ChannelSession]) -> List[str]:
        if self.completion == "stream":
            result = await self.collector.run(graph, self.capture_node_id)
            piece.job_id = result.job_id
            piece.unconfirmed = not result.confirmed
            return result.image_urls

        submission = await self.client.submit(graph)
        piece.job_id = submission.job_id
        assets = await self._await_assets(submission.job_id, session)
        return [a.url for a in assets]

    async def _await_assets(self, job_id: str, session: Optional[ChannelSession]) -> List[Asset]:
        """Wait for the job's outputs. The event wait and the history poll share one output_timeout."""
        timeout = self.materializer.timeout
        start = time.monotonic()
        if session is not None:
            tracker = session.track(
                job_id, on_node=lambda node: logger.debug(f"Job {job_id} executing node {node}")
            )
            try:
                outcome = await tracker.wait(timeout)
            except asyncio.TimeoutError:
                logger.warning(f"No completion event for job {job_id}; checking history")
            else:
                if not outcome.confirmed:
                    logger.warning(f"Completion of job {job_id} unconfirmed; checking history")
        remaining = max(0.0, timeout - (time.monotonic() - start))
        outputs = await self.materializer.await_outputs(job_id, timeout=remaining)
        return build_asset_urls(self.client, outputs)

    # ------------------------------------------------------------------ #
    # Prompt batches
    # ------------------------------------------------------------------ #

    async def run_prompts(self, prompts: List[str], wait: bool = False,
                          image_filename: Optional[str] = None) -> List[JobRecord]:
        """
        Queue one job per prompt on the prompt template, each with a fresh seed.

        With wait=True each job is then awaited in order and its assets
        attached; a job that fails keeps empty artifacts and status error.
        Raises RuntimeError while a batch runs.
        """
        if self.is_generating:
            raise RuntimeError("A batch is already running")
        graphs = [self.build_prompt_graph(prompt, image_filename) for prompt in prompts]

        self.is_generating = True
        session = None
        try:
            # Subscribe before submitting so no completion event is missed
            if wait:
                session = await self._ensure_session(None)

            records = []
            for prompt, graph in zip(prompts, graphs):
                try:
                    submission = await self.client.submit(graph)
                    records.append(JobRecord(request=prompt, job_id=submission.job_id))
                except ComfyUIError as e:
                    logger.warning(f"Submission failed for prompt {prompt[:40]!r}: {e}")
                    records.append(JobRecord(request=prompt, status="error", error=str(e)))

            if not wait:
                return records

            for record in records:
                if record.job_id is None:
                    continue
                try:
                    session = await self._ensure_session(session)
                    record.artifacts = await self._await_assets(record.job_id, session)
                    record.status = "complete"
                except Exception as e:
                    record.artifacts = []
                    record.status = "error"
                    record.error = str(e) or "Generation failed"
        finally:
            if session is not None:
                await session.close()
            self.is_generating = False
        return records

    def status(self) -> Dict[str, Any]:
        return {
            "is_generating": self.is_generating,
            "progress": self.progress.to_dict(),
            "error": self.error,
            "pieces": [p.to_dict() for p in self.pieces],
        }
