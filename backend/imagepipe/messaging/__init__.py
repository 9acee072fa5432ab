from imagepipe.messaging.publisher import (
    AI_JOBS_QUEUE,
    IMAGE_JOBS_QUEUE,
    JobPublisher,
    PublishError,
    get_job_publisher,
)

__all__ = ["AI_JOBS_QUEUE", "IMAGE_JOBS_QUEUE", "JobPublisher", "PublishError", "get_job_publisher"]
