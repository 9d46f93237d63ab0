import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import List

from opentelemetry import trace

from lib.base_logger import logger
from lib.podcov import PublishError

TRACER = trace.get_tracer("podcov")

PUSH_RETRIES = 3
PUSH_TIMEOUT = 120
ARTIFACT_TYPE = "application/vnd.podcov.coverage.v1"


@dataclass
class PushOptions:
    registry: str
    repository: str
    tag: str
    expires_after: str = ""
    title: str = "Coverage data"

    @property
    def reference(self) -> str:
        return f"{self.registry}/{self.repository}:{self.tag}"


def get_oras_push_args(oras_cmd: str, options: PushOptions, files: List[str]) -> List[str]:
    args = [oras_cmd, "push", options.reference, "--artifact-type", ARTIFACT_TYPE]
    if options.title:
        args += ["--annotation", f"org.opencontainers.image.title={options.title}"]
    if options.expires_after:
        args += ["--annotation", f"quay.expires-after={options.expires_after}"]
    return args + files


def artifact_files(artifact_dir: str) -> List[str]:
    if not os.path.isdir(artifact_dir):
        raise PublishError(f"artifact directory {artifact_dir} does not exist")
    files = sorted(f for f in os.listdir(artifact_dir) if os.path.isfile(os.path.join(artifact_dir, f)))
    if not files:
        raise PublishError(f"artifact directory {artifact_dir} is empty")
    return files


@TRACER.start_as_current_span("oras_push")
def oras_push(artifact_dir: str, options: PushOptions, retries: int = PUSH_RETRIES) -> str:
    """Pushes every file in `artifact_dir` as one OCI artifact. Registry credentials come from the docker config."""
    oras_cmd = shutil.which("oras")
    if oras_cmd is None:
        raise PublishError("oras executable not found in PATH")

    # file names are passed relative to artifact_dir so the artifact does not carry local paths
    args = get_oras_push_args(oras_cmd, options, artifact_files(artifact_dir))
    trace.get_current_span().set_attribute("podcov.artifact", options.reference)
    logger.info(f"Pushing coverage artifact {options.reference}")

    while True:
        try:
            cp = subprocess.run(
                args, cwd=artifact_dir, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, timeout=PUSH_TIMEOUT
            )
        except subprocess.TimeoutExpired as e:
            raise PublishError(f"oras push {options.reference} timed out after {PUSH_TIMEOUT}s") from e

        if cp.returncode == 0:
            logger.info(f"Coverage artifact pushed: {options.reference}")
            return options.reference
        if retries <= 0:
            raise PublishError(cp.stderr)
        logger.warning(f"oras push failed, retrying: {cp.stderr.strip()}")
        retries -= 1
