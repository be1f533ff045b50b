"""
Proof Submission Handler.
Validates submitted evidence against a task's proof policy and builds Proof records.
"""
from typing import Any, Dict, Optional

from .config import config
from .errors import ValidationError
from .models import Proof, ProofPolicy, TaskDefinition
from .s3_utils import generate_presigned_url
from .utils import SystemClock, to_iso


class ProofSubmissionHandler:
    """Turns a raw proof payload into a validated Proof."""

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()

    def validate(
        self,
        task: TaskDefinition,
        payload: Dict[str, Any],
        user_id: str,
        proof_id: str
    ) -> Proof:
        """
        Validate a proof payload for ``task``.

        Args:
            task: Definition whose proof policy applies
            payload: Submitted proof ({'type': 'photo'|'text'|'auto', ...})
            user_id: Submitting user
            proof_id: Id to give the Proof record

        Returns:
            Proof in review status 'pending'

        Raises:
            ValidationError: payload does not satisfy the policy
        """
        if task.proof_policy is ProofPolicy.NONE:
            raise ValidationError(f"Task {task.id} does not take a proof submission")
        if not isinstance(payload, dict):
            raise ValidationError('Proof payload must be an object')

        proof_type = payload.get('type') or task.proof_policy.value
        if proof_type != task.proof_policy.value:
            raise ValidationError(
                f"Task {task.id} requires a {task.proof_policy.value} proof, got {proof_type}",
                expected=task.proof_policy.value,
            )

        fields = {
            'id': proof_id,
            'user_id': user_id,
            'task_id': task.id,
            'proof_type': proof_type,
            'submitted_at': to_iso(self.clock.now()),
        }
        if task.proof_policy is ProofPolicy.PHOTO:
            fields.update(self._photo_fields(payload))
        elif task.proof_policy is ProofPolicy.TEXT:
            fields.update(self._text_fields(payload))
        else:
            fields.update(self._auto_fields(payload))
        return Proof(**fields)

    def _photo_fields(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        file_url = payload.get('file_url')
        if not isinstance(file_url, str) or not file_url.strip():
            raise ValidationError('Photo proof requires a file reference')
        file_url = file_url.strip()

        mime_type = payload.get('mime_type')
        if mime_type not in config.ALLOWED_PHOTO_TYPES:
            raise ValidationError(
                f"Unsupported photo type: {mime_type}",
                allowed=list(config.ALLOWED_PHOTO_TYPES),
            )

        size = payload.get('file_size_bytes')
        if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
            raise ValidationError('Photo proof requires a positive file size')
        if size > config.MAX_PHOTO_BYTES:
            raise ValidationError(
                f"Photo is larger than {config.MAX_PHOTO_BYTES} bytes",
                max_bytes=config.MAX_PHOTO_BYTES,
            )

        file_name = payload.get('file_name') or file_url.rsplit('/', 1)[-1]
        return {
            'file_url': file_url,
            'file_name': str(file_name),
            'file_size_bytes': size,
            'mime_type': mime_type,
        }

    def _text_fields(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        content = payload.get('content')
        if not isinstance(content, str):
            raise ValidationError('Text proof requires content')
        content = content.strip()
        if len(content) < config.TEXT_PROOF_MIN_CHARS:
            raise ValidationError(
                f"Text proof must be at least {config.TEXT_PROOF_MIN_CHARS} characters"
            )
        if len(content) > config.TEXT_PROOF_MAX_CHARS:
            raise ValidationError(
                f"Text proof must be at most {config.TEXT_PROOF_MAX_CHARS} characters"
            )
        return {
            'content': content,
            'word_count': len(content.split()),
            'character_count': len(content),
        }

    def _auto_fields(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        evidence = payload.get('evidence')
        if not isinstance(evidence, dict) or not evidence:
            raise ValidationError('Auto proof requires evidence from the activity')
        return {'evidence': evidence}

    def stub(self, task: TaskDefinition, user_id: str, proof_id: str) -> Proof:
        """Placeholder proof for tasks whose policy is 'none'."""
        return Proof(
            id=proof_id,
            user_id=user_id,
            task_id=task.id,
            proof_type=ProofPolicy.NONE.value,
            submitted_at=to_iso(self.clock.now()),
            evidence={'auto_generated': True},
        )

    def photo_url(self, proof: Proof) -> Optional[str]:
        """Presigned GET URL for a photo proof, None for other proof types."""
        if proof.proof_type != ProofPolicy.PHOTO.value or not proof.file_url:
            return None
        return generate_presigned_url(proof.file_url)
