"""Model runtime adapter service in front of a Triton inference server."""

from __future__ import annotations

import logging
import os
import shutil
from typing import Iterable, Optional, Protocol

from meshadapter.common import (
    TRITON_MODEL_SUBDIR,
    TRITON_SERVICE_NAME,
    AdapterError,
    LoadModelRequest,
    LoadModelResponse,
    MethodInfo,
    RuntimeCallError,
    RuntimeState,
    RuntimeStatusResponse,
    StatusCode,
    calc_mem_capacity,
    clear_directory_contents,
    get_model_type,
    secure_join,
)
from meshadapter.triton_config import TritonAdapterConfiguration
from meshadapter.triton_layout import LayoutError, adapt_model_layout_for_runtime

logger = logging.getLogger(__name__)

_ID_INJECTION_PATH = (1,)


class _TritonClient(Protocol):
    """The calls the adapter makes to the Triton server.

    Failures are raised as RuntimeCallError carrying the status code.
    """

    def repository_model_load(self, model_name: str) -> None: ...

    def repository_model_unload(self, model_name: str) -> None: ...

    def server_ready(self) -> bool: ...

    def repository_index(self, ready: bool) -> Iterable[str]: ...

    def server_metadata(self) -> str: ...


class _Puller(Protocol):
    """Fetches model files from storage into a local cache."""

    def process_load_model_request(self, request: LoadModelRequest) -> LoadModelRequest: ...

    def cleanup_model(self, model_id: str) -> None: ...

    def clear_local_model_storage(self, exclude: str) -> None: ...


def _status_code(exc: BaseException) -> StatusCode:
    if isinstance(exc, (RuntimeCallError, AdapterError)):
        return exc.code
    return StatusCode.UNKNOWN


def _remove_all(path: str) -> None:
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.unlink(path)
    except FileNotFoundError:
        pass


class TritonAdapterServer:
    """Loads, unloads and reports on models held by a Triton server."""

    def __init__(self, config: TritonAdapterConfiguration, client: _TritonClient) -> None:
        self.config = config
        self.client = client
        # Set when the embedded puller is enabled; it is configured separately.
        self.puller: Optional[_Puller] = None
        logger.info("Triton runtime adapter started")

    def _require_puller(self) -> _Puller:
        if self.puller is None:
            raise AdapterError(
                StatusCode.FAILED_PRECONDITION,
                "The embedded puller is enabled but no puller is configured",
            )
        return self.puller

    def load_model(self, request: LoadModelRequest) -> LoadModelResponse:
        """Lay out the model files for Triton and ask Triton to load them."""
        model_type = get_model_type(request)
        logger.info("Using model type %r for model %s", model_type, request.model_id)

        if self.config.use_embedded_puller:
            request = self._require_puller().process_load_model_request(request)

        try:
            adapt_model_layout_for_runtime(
                self.config.root_model_dir,
                request.model_id,
                model_type,
                request.model_path,
                "",
            )
        except (LayoutError, OSError, ValueError) as exc:
            logger.error("Failed to create model directory and load model: %s", exc)
            raise AdapterError(
                _status_code(exc), f"Failed to load Model due to adapter error: {exc}"
            ) from exc

        try:
            self.client.repository_model_load(request.model_id)
        except Exception as exc:
            logger.error("Triton failed to load model %s: %s", request.model_id, exc)
            raise AdapterError(
                _status_code(exc), f"Failed to load Model due to Triton runtime error: {exc}"
            ) from exc

        size = calc_mem_capacity(
            request.model_key,
            self.config.default_model_size_in_bytes,
            self.config.model_size_multiplier,
        )
        logger.info("Triton model %s loaded", request.model_id)
        return LoadModelResponse(
            size_in_bytes=size, max_concurrency=self.config.limit_model_concurrency
        )

    def unload_model(self, model_id: str) -> None:
        """Ask Triton to unload a model and remove its adapted files."""
        try:
            self.client.repository_model_unload(model_id)
        except Exception as exc:
            if _status_code(exc) == StatusCode.NOT_FOUND:
                logger.info("Unload request for model %s not found in Triton: %s", model_id, exc)
            else:
                logger.error("Failed to unload model %s from Triton: %s", model_id, exc)
                raise AdapterError(
                    _status_code(exc), "Failed to unload model from Triton"
                ) from exc

        try:
            model_dir = secure_join(self.config.root_model_dir, model_id)
        except ValueError as exc:
            raise AdapterError(
                StatusCode.UNKNOWN, f"Unable to securely join model id {model_id!r}: {exc}"
            ) from exc
        try:
            _remove_all(model_dir)
        except OSError as exc:
            raise AdapterError(
                StatusCode.UNKNOWN, f"Error while deleting the {model_dir} dir: {exc}"
            ) from exc

        if self.config.use_embedded_puller:
            try:
                self._require_puller().cleanup_model(model_id)
            except AdapterError:
                raise
            except Exception as exc:
                raise AdapterError(
                    _status_code(exc),
                    f"Failed to delete model files from puller cache: {exc}",
                ) from exc

    def runtime_status(self) -> RuntimeStatusResponse:
        """Report readiness, clearing any models left from a previous run once Triton is up."""
        starting = RuntimeStatusResponse(status=RuntimeState.STARTING)

        try:
            ready = self.client.server_ready()
        except Exception as exc:
            logger.info("Triton failed to get status or not ready: %s", exc)
            return starting
        if not ready:
            logger.info("Triton runtime not ready")
            return starting

        try:
            loaded = list(self.client.repository_index(ready=True))
        except Exception as exc:
            logger.info("Triton runtime status, getting model info failed: %s", exc)
            return starting

        for name in loaded:
            try:
                self.client.repository_model_unload(name)
            except Exception as exc:
                logger.info("Triton runtime status, unload model failed: %s", exc)
                return starting

        try:
            clear_directory_contents(self.config.root_model_dir, None)
        except OSError as exc:
            logger.error("Error cleaning up local model dir: %s", exc)
            return RuntimeStatusResponse(status=RuntimeState.FAILING)

        if self.config.use_embedded_puller:
            try:
                self._require_puller().clear_local_model_storage(TRITON_MODEL_SUBDIR)
            except Exception as exc:
                logger.error("Error cleaning up local model dir: %s", exc)
                return RuntimeStatusResponse(status=RuntimeState.FAILING)

        try:
            version = self.client.server_metadata()
        except Exception as exc:
            logger.info("Warning: Triton failed to get version from server metadata: %s", exc)
            version = ""
        if version:
            logger.info("Using runtime version returned by Triton: %s", version)
            self.config.runtime_version = version

        response = RuntimeStatusResponse(
            status=RuntimeState.READY,
            capacity_in_bytes=self.config.capacity_in_bytes,
            max_loading_concurrency=self.config.max_loading_concurrency,
            model_loading_timeout_ms=self.config.model_loading_timeout_ms,
            default_model_size_in_bytes=self.config.default_model_size_in_bytes,
            runtime_version=self.config.runtime_version,
            limit_model_concurrency=self.config.limit_model_concurrency > 0,
            method_infos={
                f"{TRITON_SERVICE_NAME}/ModelInfer": MethodInfo(_ID_INJECTION_PATH),
                f"{TRITON_SERVICE_NAME}/ModelMetadata": MethodInfo(_ID_INJECTION_PATH),
            },
        )
        logger.info("runtimeStatus: %s", response)
        return response