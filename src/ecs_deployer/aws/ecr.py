"""ECR image lookups for the pre-deployment image check."""
import logging
import re
from dataclasses import dataclass
from typing import Optional

from botocore.exceptions import ClientError

from ecs_deployer.aws.utils import error_code, get_ecr_client

logger = logging.getLogger(__name__)

ECR_IMAGE_PATTERN = re.compile(
    r'^(?P<registry>\d{12})\.dkr\.ecr\.(?P<region>[a-z0-9-]+)\.amazonaws\.com(?:\.cn)?/'
    r'(?P<repository>[a-z0-9][a-z0-9._/-]*?)'
    r'(?::(?P<tag>[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}))?'
    r'(?:@(?P<digest>sha256:[a-f0-9]{64}))?$'
)


@dataclass(frozen=True)
class ECRImage:
    registry_id: str
    region: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    def image_id(self) -> dict:
        if self.digest:
            return {'imageDigest': self.digest}
        return {'imageTag': self.tag or 'latest'}


def parse_ecr_image(image: str) -> Optional[ECRImage]:
    """Split an ECR image URI; None for images hosted anywhere else."""
    match = ECR_IMAGE_PATTERN.match(image)
    if not match:
        return None
    return ECRImage(
        registry_id=match.group('registry'),
        region=match.group('region'),
        repository=match.group('repository'),
        tag=match.group('tag'),
        digest=match.group('digest'),
    )


class ECRImageVerifier:
    """Checks that an image has been pushed before a task definition points at it."""

    def __init__(self, ecr_client=None):
        self.ecr_client = ecr_client

    def client_for(self, image: ECRImage):
        """ECR client in the region the image's registry lives in."""
        return self.ecr_client or get_ecr_client(image.region)

    def image_exists(self, image: ECRImage) -> bool:
        try:
            response = self.client_for(image).describe_images(
                registryId=image.registry_id,
                repositoryName=image.repository,
                imageIds=[image.image_id()]
            )
        except ClientError as e:
            if error_code(e) in ('ImageNotFoundException', 'RepositoryNotFoundException'):
                logger.warning(f"Image not found in ECR: {image.repository} {image.image_id()}")
                return False
            raise
        return bool(response.get('imageDetails'))
