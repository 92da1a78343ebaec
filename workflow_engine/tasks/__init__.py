"""Task catalog composing the runner and stream helpers into named operations."""

from workflow_engine.tasks.antivirus import ClamAntivirusScanTask
from workflow_engine.tasks.base import Task, TaskOptions
from workflow_engine.tasks.bundle import GatecheckBundleTask, GatecheckValidateTask, OrasBundlePublishTask
from workflow_engine.tasks.code_scan import CombinedCodeScanTask, GitleaksCodeScanTask, SemgrepCodeScanTask
from workflow_engine.tasks.image_build import BakeImageBuildTask, GenericImageBuildTask, new_image_build_task
from workflow_engine.tasks.image_push import ImagePushTask
from workflow_engine.tasks.image_save import ImageSaveTask
from workflow_engine.tasks.image_scan import GrypeImageScanTask

__all__ = [
    "BakeImageBuildTask",
    "ClamAntivirusScanTask",
    "CombinedCodeScanTask",
    "GatecheckBundleTask",
    "GatecheckValidateTask",
    "GenericImageBuildTask",
    "GitleaksCodeScanTask",
    "GrypeImageScanTask",
    "ImagePushTask",
    "ImageSaveTask",
    "OrasBundlePublishTask",
    "SemgrepCodeScanTask",
    "Task",
    "TaskOptions",
    "new_image_build_task",
]
