# actions/artifacts.py
from __future__ import annotations

from ..artifacts import pack_path, unpack_blob
from ..errors import CIError
from .base import InvocationResult, StepInvocation


class UploadArtifact:
    """
    uses: upload-artifact
    with:
      name: artifact name (default "artifact")
      path: file or directory to pack
      if-no-files-found: error | warn | ignore (default "warn")
    """

    def invoke(self, invocation: StepInvocation) -> InvocationResult:
        name = invocation.param("name", "artifact")
        path = invocation.resolve(invocation.require("path"))
        missing = invocation.param("if-no-files-found", "warn")
        if missing not in ("error", "warn", "ignore"):
            raise CIError(
                kind="invalid_params",
                job=invocation.job,
                step=invocation.step.name,
                message=f"if-no-files-found must be error|warn|ignore, got {missing!r}",
            )

        blob = pack_path(path)
        if blob is None:
            msg = f"No files were found with the provided path: {path}"
            if missing == "error":
                return InvocationResult(exit_code=1, stderr=msg)
            return InvocationResult(exit_code=0, stderr=msg if missing == "warn" else "")

        # DuplicateArtifactError propagates: fatal to the job
        invocation.artifacts.put(name, blob)
        return InvocationResult(
            exit_code=0,
            stdout=f"Uploaded artifact '{name}' ({len(blob)} bytes)",
            outputs={"artifact-name": name},
        )


class DownloadArtifact:
    """
    uses: download-artifact
    with:
      name: artifact to download (default: every visible artifact, each
            extracted into its own <path>/<name> subdirectory)
      path: destination directory (default ".")
    """

    def invoke(self, invocation: StepInvocation) -> InvocationResult:
        dest = invocation.resolve(invocation.param("path", "."))
        name = invocation.param("name")

        if name is not None:
            # ArtifactNotFoundError propagates: fatal to the job
            members = unpack_blob(invocation.artifacts.get(name), dest)
            return InvocationResult(
                exit_code=0,
                stdout=f"Downloaded artifact '{name}' ({len(members)} entries) to {dest}",
                outputs={"download-path": str(dest)},
            )

        names = invocation.artifacts.names()
        for each in names:
            unpack_blob(invocation.artifacts.get(each), dest / each)
        return InvocationResult(
            exit_code=0,
            stdout=f"Downloaded {len(names)} artifact(s) to {dest}: {', '.join(names)}",
            outputs={"download-path": str(dest)},
        )
