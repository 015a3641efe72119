"""Material and submission pipelines.

Material: upload -> metadata -> thumbnail -> notify
Submission: upload -> plagiarism_check -> notify_owner

Intake validates synchronously and raises ValidationError before any job
exists. Accepted content is staged in the local_temp bucket; the upload
stage moves it into the bucket its artifact kind is classified into.
"""

import hashlib
import mimetypes
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Set

from course_jobs.cache import tags as cache_tags
from course_jobs.config.settings import PipelineConfig
from course_jobs.exceptions import NotFoundError, TerminalStageError, ValidationError
from course_jobs.logging_config import logger
from course_jobs.pipeline.orchestrator import PipelineOrchestrator
from course_jobs.pipeline.run import PipelineRun
from course_jobs.pipeline.stages import StageContext, StageHandler, StageResult
from course_jobs.queue.engine import JobQueue
from course_jobs.queue.job import Dispatch
from course_jobs.services.entities import Material, MaterialStatus, Submission, SubmissionStatus
from course_jobs.services.notifier import enqueue_notification
from course_jobs.services.repository import Repositories, UnitOfWork
from course_jobs.services.storage import BucketProfile, ObjectRef, StorageRegistry
from course_jobs.utils import Clock, utcnow


@dataclass(frozen=True)
class Accepted:
    """Receipt of an accepted artifact: the entity created and its run."""
    entity_id: str
    run_id: str


def _staged_ref(context: StageContext) -> ObjectRef:
    params = context.params
    return ObjectRef(bucket=params["staging_bucket"], key=params["staging_key"], size=0, etag="")


def _stored_ref(output: Dict) -> ObjectRef:
    return ObjectRef(bucket=output["bucket"], key=output["key"], size=output["size"], etag=output["etag"])


class UploadStage(StageHandler):
    """Moves the staged artifact into its classified bucket.

    Redelivery after the staged copy was removed reuses the recorded
    object instead of failing.
    """

    name = "upload"

    def __init__(self, storage: StorageRegistry, artifact_kind: str):
        self.storage = storage
        self.artifact_kind = artifact_kind

    @abstractmethod
    def target_key(self, context: StageContext) -> str:
        pass

    @abstractmethod
    async def record(self, context: StageContext, ref: ObjectRef) -> Set[str]:
        """Persist where the artifact lives; returns the tags made stale."""
        pass

    @abstractmethod
    async def stored_ref(self, context: StageContext) -> Optional[ObjectRef]:
        pass

    async def execute(self, context: StageContext) -> StageResult:
        staging = self.storage.for_profile(BucketProfile.LOCAL_TEMP)
        target = self.storage.for_artifact(self.artifact_kind)
        staged = _staged_ref(context)
        try:
            data = await staging.get_object(staged)
        except NotFoundError:
            ref = await self.stored_ref(context)
            if ref is None:
                raise TerminalStageError(f"Staged object {staged.bucket}/{staged.key} is gone") from None
            logger.info(f"Staged object already moved to {ref.bucket}/{ref.key}")
        else:
            ref = await target.upload(self.target_key(context), data)
        tags = await self.record(context, ref)
        await staging.delete_object(staged)
        return StageResult.success(
            {
                "bucket": ref.bucket,
                "key": ref.key,
                "size": ref.size,
                "etag": ref.etag,
                "multipart": ref.size > target.multipart_threshold,
            },
            tags,
        )


class MaterialUploadStage(UploadStage):
    """Uploads a material; the material becomes available once stored."""

    def __init__(self, storage: StorageRegistry, repos: Repositories):
        super().__init__(storage, "material")
        self.repos = repos

    def target_key(self, context: StageContext) -> str:
        params = context.params
        return f"{params['course_id']}/{params['material_id']}/{params['filename']}"

    async def stored_ref(self, context: StageContext) -> Optional[ObjectRef]:
        material = await self.repos.materials.find_by_id(context.params["material_id"])
        if material is None or not material.storage_key:
            return None
        return ObjectRef(
            bucket=material.bucket,
            key=material.storage_key,
            size=material.size,
            etag=material.metadata.get("etag", ""),
        )

    async def record(self, context: StageContext, ref: ObjectRef) -> Set[str]:
        material_id = context.params["material_id"]
        material = await self.repos.materials.find_by_id(material_id)
        if material is None:
            raise TerminalStageError(f"Material {material_id} was deleted during processing")
        await self.repos.materials.update(
            material_id,
            status=MaterialStatus.AVAILABLE.value,
            bucket=ref.bucket,
            storage_key=ref.key,
            size=ref.size,
            metadata={**material.metadata, "etag": ref.etag},
        )
        return {cache_tags.material_detail(material_id)}


class MetadataStage(StageHandler):
    """Extracts size, checksum and content type of the stored material."""

    name = "metadata"

    def __init__(self, storage: StorageRegistry, repos: Repositories):
        self.storage = storage
        self.repos = repos

    async def execute(self, context: StageContext) -> StageResult:
        material_id = context.params["material_id"]
        ref = _stored_ref(context.output_of("upload"))
        data = await self.storage.for_bucket(ref.bucket).get_object(ref)
        filename = context.params["filename"]
        guessed, _ = mimetypes.guess_type(filename)
        metadata = {
            "size": len(data),
            "sha256": hashlib.sha256(data).hexdigest(),
            "content_type": guessed or context.params.get("content_type") or "application/octet-stream",
            "extension": os.path.splitext(filename)[1].lower(),
        }
        material = await self.repos.materials.find_by_id(material_id)
        if material is None:
            raise TerminalStageError(f"Material {material_id} was deleted during processing")
        await self.repos.materials.update(
            material_id,
            content_type=metadata["content_type"],
            metadata={**material.metadata, **metadata},
        )
        return StageResult.success(metadata, {cache_tags.material_detail(material_id)})


class ThumbnailRenderer(ABC):
    """Produces a preview image for a material."""

    content_type: str = "image/svg+xml"
    extension: str = ".svg"

    @abstractmethod
    async def render(self, filename: str, content_type: str, data: bytes) -> bytes:
        """Render a thumbnail.

        Raises:
            TerminalStageError: If the material cannot be previewed
        """
        pass


class PlaceholderThumbnailRenderer(ThumbnailRenderer):
    """Labelled SVG card showing the file type and name."""

    async def render(self, filename: str, content_type: str, data: bytes) -> bytes:
        label = os.path.splitext(filename)[1].lstrip(".").upper() or "FILE"
        title = re.sub(r"[<>&\"']", "", filename)[:40]
        svg = (
            '<svg xmlns="http://www.w3.org/2000/svg" width="240" height="160">'
            '<rect width="240" height="160" rx="8" fill="#eef2f7"/>'
            f'<text x="120" y="78" font-size="32" text-anchor="middle">{label}</text>'
            f'<text x="120" y="120" font-size="12" text-anchor="middle">{title}</text>'
            "</svg>"
        )
        return svg.encode("utf-8")


class ThumbnailStage(StageHandler):
    """Renders and stores a thumbnail next to the material."""

    name = "thumbnail"

    def __init__(self, storage: StorageRegistry, repos: Repositories, renderer: ThumbnailRenderer):
        self.storage = storage
        self.repos = repos
        self.renderer = renderer

    async def execute(self, context: StageContext) -> StageResult:
        params = context.params
        material_id = params["material_id"]
        ref = _stored_ref(context.output_of("upload"))
        gateway = self.storage.for_bucket(ref.bucket)
        data = await gateway.get_object(ref)
        content_type = context.output_of("metadata").get("content_type", params.get("content_type", ""))
        image = await self.renderer.render(params["filename"], content_type, data)
        thumb = await gateway.put_object(
            f"{params['course_id']}/{material_id}/thumbnail{self.renderer.extension}", image
        )
        await self.repos.materials.update(material_id, thumbnail_key=thumb.key)
        return StageResult.success(
            {"thumbnail_key": thumb.key, "content_type": self.renderer.content_type},
            {cache_tags.material_detail(material_id)},
        )


class NotifyEnrolledStage(StageHandler):
    """Fans out one notify.send job per enrolled student."""

    name = "notify"

    def __init__(self, repos: Repositories, queue: JobQueue):
        self.repos = repos
        self.queue = queue

    async def execute(self, context: StageContext) -> StageResult:
        params = context.params
        material_id = params["material_id"]
        course = await self.repos.courses.find_by_id(params["course_id"])
        if course is None:
            raise TerminalStageError(f"Course {params['course_id']} no longer exists")
        notified = 0
        for enrollment in await self.repos.enrollments.find_by_parent(course.course_id):
            student = await self.repos.students.find_by_id(enrollment.student_id)
            if student is None:
                logger.warning(f"Enrolled student {enrollment.student_id} has no profile, not notified")
                continue
            await enqueue_notification(
                self.queue,
                student.email,
                "material_published",
                {"course_title": course.title, "filename": params["filename"]},
                idempotency_key=f"material:{material_id}:notify:{student.student_id}",
            )
            notified += 1
        return StageResult.success({"notified": notified})


class SubmissionUploadStage(UploadStage):
    """Stores a submission in the private bucket."""

    def __init__(self, storage: StorageRegistry, repos: Repositories):
        super().__init__(storage, "submission")
        self.repos = repos

    def target_key(self, context: StageContext) -> str:
        params = context.params
        return f"submissions/{params['assignment_id']}/{params['submission_id']}/{params['filename']}"

    async def stored_ref(self, context: StageContext) -> Optional[ObjectRef]:
        submission = await self.repos.submissions.find_by_id(context.params["submission_id"])
        if submission is None or not submission.storage_key:
            return None
        bucket = self.storage.for_artifact("submission").bucket
        return ObjectRef(bucket=bucket, key=submission.storage_key, size=0, etag="")

    async def record(self, context: StageContext, ref: ObjectRef) -> Set[str]:
        submission_id = context.params["submission_id"]
        await self.repos.submissions.update(
            submission_id, status=SubmissionStatus.STORED.value, storage_key=ref.key
        )
        return {cache_tags.submission(submission_id)}


class PlagiarismScorer(ABC):
    """Scores how similar a submission is to earlier ones, in [0, 1]."""

    @abstractmethod
    async def score(self, content: bytes, others: List[bytes]) -> float:
        pass


class ShingleOverlapScorer(PlagiarismScorer):
    """Highest Jaccard overlap of word shingles with any other submission.

    Deterministic: the same corpus always yields the same score.
    """

    def __init__(self, shingle_size: int = 5):
        self.shingle_size = shingle_size

    def _shingles(self, content: bytes) -> FrozenSet[str]:
        words = re.findall(r"\w+", content.decode("utf-8", errors="ignore").lower())
        if len(words) < self.shingle_size:
            return frozenset([" ".join(words)]) if words else frozenset()
        return frozenset(
            " ".join(words[i:i + self.shingle_size]) for i in range(len(words) - self.shingle_size + 1)
        )

    async def score(self, content: bytes, others: List[bytes]) -> float:
        mine = self._shingles(content)
        if not mine:
            return 0.0
        best = 0.0
        for other in others:
            theirs = self._shingles(other)
            if theirs:
                best = max(best, len(mine & theirs) / len(mine | theirs))
        return round(best, 4)


class PlagiarismCheckStage(StageHandler):
    name = "plagiarism_check"

    def __init__(self, storage: StorageRegistry, repos: Repositories, scorer: PlagiarismScorer):
        self.storage = storage
        self.repos = repos
        self.scorer = scorer

    async def execute(self, context: StageContext) -> StageResult:
        params = context.params
        assignment = await self.repos.assignments.find_by_id(params["assignment_id"])
        if assignment is None:
            raise TerminalStageError(f"Assignment {params['assignment_id']} no longer exists")
        if assignment.closed:
            raise TerminalStageError(f"Assignment {assignment.title} is closed")

        gateway = self.storage.for_artifact("submission")
        ref = _stored_ref(context.output_of("upload"))
        content = await gateway.get_object(ref)
        others = []
        for other in await self.repos.submissions.find_by_parent(assignment.assignment_id):
            if other.submission_id == params["submission_id"] or not other.storage_key:
                continue
            try:
                others.append(
                    await gateway.get_object(ObjectRef(gateway.bucket, other.storage_key, 0, ""))
                )
            except NotFoundError:
                logger.warning(f"Submission {other.submission_id} object missing, not compared")
        score = await self.scorer.score(content, others)
        await self.repos.submissions.update(
            params["submission_id"], status=SubmissionStatus.SCORED.value, similarity_score=score
        )
        return StageResult.success(
            {"similarity_score": score, "compared": len(others)},
            {cache_tags.submission(params["submission_id"])},
        )


class NotifyOwnerStage(StageHandler):
    """Tells the submitting student their score."""

    name = "notify_owner"

    def __init__(self, repos: Repositories, queue: JobQueue):
        self.repos = repos
        self.queue = queue

    async def execute(self, context: StageContext) -> StageResult:
        params = context.params
        if not context.run.owner_contact:
            return StageResult.success({"notified": 0})
        assignment = await self.repos.assignments.find_by_id(params["assignment_id"])
        title = assignment.title if assignment else params["assignment_id"]
        job_id = await enqueue_notification(
            self.queue,
            context.run.owner_contact,
            "submission_scored",
            {
                "submission_id": params["submission_id"],
                "assignment_title": title,
                "score": context.output_of("plagiarism_check").get("similarity_score", 0.0),
            },
            idempotency_key=f"submission:{params['submission_id']}:scored",
        )
        return StageResult.success({"notified": 1, "job_id": job_id})


class MaterialIntake:
    """Accepts course materials and starts their pipeline."""

    def __init__(
        self,
        repos: Repositories,
        storage: StorageRegistry,
        orchestrator: PipelineOrchestrator,
        config: PipelineConfig,
        clock: Clock = utcnow,
    ):
        self.repos = repos
        self.storage = storage
        self.orchestrator = orchestrator
        self.config = config
        self._clock = clock

    def _validate(self, filename: str, size: int) -> None:
        extension = os.path.splitext(filename)[1].lower()
        if not filename or "/" in filename or "\\" in filename:
            raise ValidationError(f"Invalid filename: {filename!r}")
        if extension not in self.config.allowed_extensions:
            raise ValidationError(f"File type {extension or '(none)'} is not allowed")
        if size <= 0:
            raise ValidationError("File is empty")
        if size > self.config.max_upload_bytes:
            raise ValidationError(f"File exceeds {self.config.max_upload_bytes} bytes")

    async def submit_material(
        self,
        course_id: str,
        filename: str,
        content: bytes,
        uploaded_by: str,
        content_type: Optional[str] = None,
        transaction: Optional[UnitOfWork] = None,
    ) -> Accepted:
        """Validate, stage and schedule processing of a material.

        The pipeline is dispatched when the transaction commits; without a
        transaction one is opened and committed here.

        Raises:
            ValidationError: If the course does not exist or the file is rejected
        """
        course = await self.repos.courses.find_by_id(course_id)
        if course is None:
            raise ValidationError(f"Course not found: {course_id}")
        self._validate(filename, len(content))

        content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        material = await self.repos.materials.create(
            Material(
                course_id=course_id,
                filename=filename,
                content_type=content_type,
                size=len(content),
                uploaded_by=uploaded_by,
                created_at=self._clock(),
            )
        )
        staging = self.storage.for_profile(BucketProfile.LOCAL_TEMP)
        staged = await staging.upload(f"materials/{material.material_id}/{filename}", content)

        async def _start(tx: UnitOfWork) -> str:
            return await self.orchestrator.start_run(
                "material",
                f"material:{material.material_id}",
                params={
                    "material_id": material.material_id,
                    "course_id": course_id,
                    "filename": filename,
                    "content_type": content_type,
                    "staging_bucket": staged.bucket,
                    "staging_key": staged.key,
                },
                completion_tags=[cache_tags.course_materials(course_id)],
                owner_contact=course.instructor_email,
                transaction=tx,
                dispatch=Dispatch.AFTER_COMMIT,
            )

        if transaction is not None:
            run_id = await _start(transaction)
        else:
            async with self.repos.transaction() as tx:
                run_id = await _start(tx)
        logger.info(f"Accepted material {material.material_id} ({len(content)} bytes) for course {course_id}")
        return Accepted(entity_id=material.material_id, run_id=run_id)

    async def mark_failed(self, run: PipelineRun) -> None:
        """Failure hook: a material that never got stored is marked failed."""
        material = await self.repos.materials.find_by_id(run.params["material_id"])
        if material is not None and material.status == MaterialStatus.PROCESSING.value:
            await self.repos.materials.update(material.material_id, status=MaterialStatus.FAILED.value)
            logger.warning(f"Material {material.material_id} marked failed")


class SubmissionIntake:
    """Accepts assignment submissions and starts their pipeline."""

    def __init__(
        self,
        repos: Repositories,
        storage: StorageRegistry,
        orchestrator: PipelineOrchestrator,
        config: PipelineConfig,
        clock: Clock = utcnow,
    ):
        self.repos = repos
        self.storage = storage
        self.orchestrator = orchestrator
        self.config = config
        self._clock = clock

    async def submit(
        self,
        assignment_id: str,
        student_id: str,
        filename: str,
        content: bytes,
        transaction: Optional[UnitOfWork] = None,
    ) -> Accepted:
        """
        Raises:
            ValidationError: If the assignment is unknown, closed or past due,
                or the file is rejected
        """
        assignment = await self.repos.assignments.find_by_id(assignment_id)
        if assignment is None:
            raise ValidationError(f"Assignment not found: {assignment_id}")
        now = self._clock()
        if assignment.closed or now > assignment.due_at:
            raise ValidationError(f"Assignment {assignment.title} no longer accepts submissions")
        student = await self.repos.students.find_by_id(student_id)
        if student is None:
            raise ValidationError(f"Student not found: {student_id}")
        if not filename or "/" in filename or "\\" in filename:
            raise ValidationError(f"Invalid filename: {filename!r}")
        if not content:
            raise ValidationError("Submission is empty")
        if len(content) > self.config.max_upload_bytes:
            raise ValidationError(f"Submission exceeds {self.config.max_upload_bytes} bytes")

        submission = await self.repos.submissions.create(
            Submission(assignment_id=assignment_id, student_id=student_id, filename=filename, submitted_at=now)
        )
        staging = self.storage.for_profile(BucketProfile.LOCAL_TEMP)
        staged = await staging.upload(f"submissions/{submission.submission_id}/{filename}", content)

        async def _start(tx: UnitOfWork) -> str:
            return await self.orchestrator.start_run(
                "submission",
                f"submission:{submission.submission_id}",
                params={
                    "submission_id": submission.submission_id,
                    "assignment_id": assignment_id,
                    "filename": filename,
                    "staging_bucket": staged.bucket,
                    "staging_key": staged.key,
                },
                completion_tags=[cache_tags.assignment_submissions(assignment_id)],
                owner_contact=student.email,
                transaction=tx,
                dispatch=Dispatch.AFTER_COMMIT,
            )

        if transaction is not None:
            run_id = await _start(transaction)
        else:
            async with self.repos.transaction() as tx:
                run_id = await _start(tx)
        logger.info(f"Accepted submission {submission.submission_id} for assignment {assignment_id}")
        return Accepted(entity_id=submission.submission_id, run_id=run_id)

    async def mark_failed(self, run: PipelineRun) -> None:
        submission_id = run.params["submission_id"]
        submission = await self.repos.submissions.find_by_id(submission_id)
        if submission is not None and submission.status != SubmissionStatus.REJECTED.value:
            await self.repos.submissions.update(submission_id, status=SubmissionStatus.REJECTED.value)
            logger.warning(f"Submission {submission_id} rejected")


def build_material_stages(
    storage: StorageRegistry,
    repos: Repositories,
    queue: JobQueue,
    renderer: Optional[ThumbnailRenderer] = None,
) -> List[StageHandler]:
    return [
        MaterialUploadStage(storage, repos),
        MetadataStage(storage, repos),
        ThumbnailStage(storage, repos, renderer or PlaceholderThumbnailRenderer()),
        NotifyEnrolledStage(repos, queue),
    ]


def build_submission_stages(
    storage: StorageRegistry,
    repos: Repositories,
    queue: JobQueue,
    scorer: Optional[PlagiarismScorer] = None,
) -> List[StageHandler]:
    return [
        SubmissionUploadStage(storage, repos),
        PlagiarismCheckStage(storage, repos, scorer or ShingleOverlapScorer()),
        NotifyOwnerStage(repos, queue),
    ]
