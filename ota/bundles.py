import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from django.conf import settings

logger = logging.getLogger(__name__)


def _storage_key(bundle_ref):
    aws_location = getattr(settings, 'AWS_LOCATION', '')
    if aws_location and not bundle_ref.startswith(aws_location + '/'):
        return f"{aws_location}/{bundle_ref}"
    return bundle_ref


def _s3_client():
    s3_config = Config(
        signature_version='s3v4',
        s3={'addressing_style': 'path'}
    )
    return boto3.client(
        's3',
        aws_access_key_id=getattr(settings, 'AWS_ACCESS_KEY_ID', None),
        aws_secret_access_key=getattr(settings, 'AWS_SECRET_ACCESS_KEY', None),
        region_name=getattr(settings, 'AWS_S3_REGION_NAME', None),
        endpoint_url=getattr(settings, 'AWS_S3_ENDPOINT_URL', None) or None,
        config=s3_config
    )


def presigned_bundle_url(bundle_ref):
    """Presigned S3 GET for the bundle, or None if signing fails."""
    expires = int(getattr(settings, 'AWS_PRESIGNED_URL_EXPIRATION', 300))
    try:
        return _s3_client().generate_presigned_url(
            'get_object',
            Params={'Bucket': settings.AWS_STORAGE_BUCKET_NAME, 'Key': _storage_key(bundle_ref)},
            ExpiresIn=expires,
        )
    except (BotoCoreError, ClientError) as e:
        logger.warning(f"Presigned URL generation failed for bundle {bundle_ref}: {e}")
        return None


def bundle_url(release):
    """
    Download URL for a release's bundle.

    Priority: 1) CloudFront domain
              2) S3 presigned GET (if OTA_USE_PRESIGNED_URL=True)
              3) OTA_BUNDLE_BASE_URL + bundle_ref
    """
    bundle_ref = release.bundle_ref

    cf_domain = getattr(settings, 'OTA_CLOUDFRONT_DOMAIN', '')
    if cf_domain:
        return f"https://{cf_domain}/{_storage_key(bundle_ref)}"

    if getattr(settings, 'OTA_USE_PRESIGNED_URL', False) and getattr(settings, 'AWS_STORAGE_BUCKET_NAME', None):
        url = presigned_bundle_url(bundle_ref)
        if url:
            return url

    base_url = getattr(settings, 'OTA_BUNDLE_BASE_URL', '')
    if base_url:
        return base_url.rstrip('/') + '/' + bundle_ref.lstrip('/')
    return bundle_ref
