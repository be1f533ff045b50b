"""
S3 utility functions for proof media.
Generates presigned URLs so reviewers can open photos in the private bucket.
"""
import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from .config import config
from .logging import logger

_s3_client = None


def get_s3_client():
    """Get or create the S3 client (s3v4 signatures for presigned URLs)."""
    global _s3_client
    if _s3_client is None:
        _s3_client = boto3.client(
            's3',
            region_name=config.AWS_REGION,
            config=BotoConfig(signature_version='s3v4')
        )
    return _s3_client


def media_key(url_or_key: str, bucket: str) -> str:
    """
    Reduce a stored file reference to an object key in ``bucket``.

    Returns None when the reference points outside the bucket.
    """
    if not url_or_key.startswith(('http://', 'https://')):
        return url_or_key
    for prefix in (f"https://{bucket}.s3.amazonaws.com/",
                   f"https://{bucket}.s3.{config.AWS_REGION}.amazonaws.com/"):
        if url_or_key.startswith(prefix):
            return url_or_key[len(prefix):]
    return None


def generate_presigned_url(
    s3_key: str,
    expiration: int = None,
    bucket_name: str = None
) -> str:
    """
    Generate a presigned URL for S3 object download.

    Args:
        s3_key: Object key (e.g. 'proofs/<user>/<file>.jpg') or a bucket URL
        expiration: URL lifetime in seconds, defaults to config.PRESIGNED_URL_EXPIRATION
        bucket_name: Optional bucket name, defaults to config.MEDIA_BUCKET

    Returns:
        Presigned URL, or the original reference when it cannot be signed
    """
    if not s3_key:
        return s3_key

    bucket = bucket_name or config.MEDIA_BUCKET
    if not bucket:
        logger.warning("No MEDIA_BUCKET configured, returning original key")
        return s3_key

    key = media_key(s3_key, bucket)
    if key is None:
        # External URL, nothing to sign
        return s3_key

    try:
        url = get_s3_client().generate_presigned_url(
            'get_object',
            Params={'Bucket': bucket, 'Key': key},
            ExpiresIn=expiration or config.PRESIGNED_URL_EXPIRATION
        )
        logger.info(f"Generated presigned URL for {key}")
        return url
    except ClientError as e:
        logger.error(f"Error generating presigned URL for {key}: {e}")
        return s3_key
