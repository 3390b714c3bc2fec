"""
Host-side training loop.

:class:`TrainingOrchestrator` owns one :class:`TrainingSession` (device,
parameter store, kernels), cycles the XOR table through the step executor
from an asyncio task, and keeps the records presentation layers read:
network state, current metrics and the sample and epoch histories.

Everything runs on one event loop. A step is never issued before the
previous one resolved, and the loop yields to the frame scheduler between
steps so stop and reconfiguration requests are seen promptly.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable

import numpy as np

from ..backend.device import DeviceInfo
from ..backend.session import DeviceSession
from ..config import NeuralNetworkConfig, TrainerSettings
from ..errors import DeviceFault, InvalidConfig
from ..records import (
    EpochMetrics,
    NetworkState,
    NetworkWeights,
    SampleHistory,
    TrainingEvent,
    TrainingMetrics,
)
from .dataset import STEPS_PER_EPOCH, epoch_for_step, sample
from .executor import StepExecutor
from .kernels import BoundKernels, KernelCache
from .params import ParameterStore, init_weights
from .scheduler import FrameScheduler

logger = logging.getLogger(__name__)

Listener = Callable[[TrainingEvent], None]


class TrainingState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    TRAINING = "training"
    STOPPED = "stopped"


class TrainingSession:
    """Device, parameter store and bound kernels of one configuration."""

    def __init__(
        self,
        config: NeuralNetworkConfig,
        devices: DeviceSession,
        cache: KernelCache,
        store: ParameterStore,
        kernels: BoundKernels,
    ):
        self.config = config
        self.devices = devices
        self.cache = cache
        self.store = store
        self.kernels = kernels
        self.closed = False

    @classmethod
    def open(
        cls, config: NeuralNetworkConfig, settings: TrainerSettings, weights: NetworkWeights
    ) -> TrainingSession:
        """
        Acquire a device, compile kernels and upload ``weights``.

        Kernels are compiled before any buffer is allocated, so a layer too
        wide for the device fails without touching device memory.

        Raises:
            UnsupportedBackend: No compute backend on this host
            NoAdapter: No usable device
            InvalidConfig: Layer width beyond the device limit
            DeviceFault: Compilation or allocation failed
        """
        devices = DeviceSession(settings)
        device = devices.acquire()
        try:
            cache = KernelCache(device)
            kernel_set = cache.get(config)
            store = ParameterStore.create(device, config, weights)
            try:
                kernels = kernel_set.bind(store)
            except Exception:
                store.destroy()
                raise
        except Exception:
            devices.release()
            raise
        return cls(config, devices, cache, store, kernels)

    @property
    def device(self):
        return self.devices.device

    def close(self) -> None:
        """Release kernels, buffers and the device. Idempotent."""
        if self.closed:
            return
        self.closed = True
        self.kernels.release()
        self.store.destroy()
        self.cache.clear()
        self.devices.release()
        logger.debug("Closed training session for %s", self.config)


class TrainingOrchestrator:
    """
    Drives training of the XOR network and exposes its progress.

    Args:
        config: Network topology and learning rate (defaults to 2-4-1, lr 0.01)
        settings: Backend, pacing and epoch limit (defaults to ``TrainerSettings()``)
    """

    def __init__(
        self,
        config: NeuralNetworkConfig | None = None,
        settings: TrainerSettings | None = None,
    ):
        self._config = config or NeuralNetworkConfig()
        self.settings = settings or TrainerSettings()
        self._max_epochs = self.settings.max_epochs
        self._rng = np.random.default_rng(self.settings.seed)
        self._executor = StepExecutor()
        self._scheduler = FrameScheduler(self.settings.frame_interval)

        self._state = TrainingState.UNINITIALIZED
        self._session: TrainingSession | None = None
        self._network_state: NetworkState | None = None
        self._metrics = TrainingMetrics()
        self._sample_history: list[SampleHistory] = []
        self._epoch_metrics: list[EpochMetrics] = []

        self._step = 0
        self._completed_epochs = 0
        self._epoch_losses: list[float] = []
        self._epoch_accuracies: list[int] = []

        self._task: asyncio.Task | None = None
        self._stop_requested = False
        self._in_step = False
        self._generation = 0
        self._pending_release: list[TrainingSession] = []
        self._device_lock = asyncio.Lock()
        self._listeners: list[Listener] = []
        self.last_error: BaseException | None = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def config(self) -> NeuralNetworkConfig:
        return self._config

    @property
    def state(self) -> TrainingState:
        return self._state

    @property
    def is_training(self) -> bool:
        return self._state is TrainingState.TRAINING

    @property
    def network_state(self) -> NetworkState | None:
        return self._network_state

    @property
    def metrics(self) -> TrainingMetrics:
        return self._metrics

    @property
    def sample_history(self) -> tuple[SampleHistory, ...]:
        return tuple(self._sample_history)

    @property
    def epoch_metrics(self) -> tuple[EpochMetrics, ...]:
        return tuple(self._epoch_metrics)

    @property
    def total_steps(self) -> int:
        """Steps executed since the last ``start_training``."""
        return self._step

    @property
    def completed_epochs(self) -> int:
        return self._completed_epochs

    @property
    def max_epochs(self) -> int:
        return self._max_epochs

    @property
    def device_info(self) -> DeviceInfo | None:
        if self._session is None or self._session.device is None:
            return None
        return self._session.device.info()

    def recent_samples(self, n: int = 10) -> tuple[SampleHistory, ...]:
        """The last ``n`` sample records, oldest first."""
        if n <= 0:
            return ()
        return tuple(self._sample_history[-n:])

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """Register ``callback`` for training events; returns an unsubscribe function."""
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _emit(self, kind: str, payload=None) -> None:
        event = TrainingEvent(kind, self._step, self._completed_epochs, payload)
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception("Training listener %r failed on %s event", callback, kind)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    def set_max_epochs(self, n: int) -> None:
        """Change the epoch limit; a running loop honours it before its next step."""
        if isinstance(n, bool) or not isinstance(n, int) or n < 0:
            raise InvalidConfig(f"max_epochs must be a non-negative integer, got {n!r}")
        self._max_epochs = n

    def update_config(self, **changes) -> NeuralNetworkConfig:
        """
        Merge ``changes`` into the config and discard the current session.

        Network state and histories are cleared. Device resources are
        released now, or as soon as an in-flight step resolves; its result
        is dropped. The next ``start_training`` re-initializes.

        Raises:
            InvalidConfig: A value is out of range or a field is unknown
        """
        config = self._config.merge(**changes)
        self._config = config
        self._generation += 1

        running = self._task is not None and not self._task.done()
        if running:
            self._stop_requested = True
            self._cancel_pending_frame()

        session, self._session = self._session, None
        if session is not None:
            self._pending_release.append(session)
        if not self._device_lock.locked():
            self._release_pending()

        self._network_state = None
        self._sample_history.clear()
        self._epoch_metrics.clear()
        self._metrics = TrainingMetrics()
        self._reset_counters()
        self._state = TrainingState.UNINITIALIZED
        logger.info("Network config updated: %s", config.to_dict())
        return config

    async def start_training(self) -> None:
        """
        Initialize if needed, reset counters and start the training loop.

        Does nothing while already training.

        Raises:
            UnsupportedBackend: No compute backend on this host
            NoAdapter: No usable device
            InvalidConfig: Layer width beyond the device limit
            DeviceFault: Kernel compilation or buffer allocation failed
        """
        if self._state is TrainingState.TRAINING:
            return
        # A previous loop may still be finishing its in-flight step
        await self.wait()
        if self._state is TrainingState.TRAINING:
            return

        if self._session is None:
            self._initialize()

        self._reset_counters()
        self._metrics = TrainingMetrics()
        self.last_error = None
        self._stop_requested = False
        self._state = TrainingState.TRAINING
        logger.info("Training started (max_epochs=%d)", self._max_epochs)
        self._task = asyncio.get_running_loop().create_task(
            self._run(self._generation), name="gpunet-training"
        )

    def stop_training(self) -> None:
        """Stop after the in-flight step (if any). Idempotent."""
        self._stop_requested = True
        self._cancel_pending_frame()
        if self._state is TrainingState.TRAINING:
            self._state = TrainingState.STOPPED
            logger.info(
                "Training stopped after %d steps (%d epochs)", self._step, self._completed_epochs
            )
            self._emit("stopped")

    async def wait(self) -> None:
        """
        Wait for the training loop task to finish.

        Cancelling the waiter (a timeout, say) leaves the loop running.
        """
        task = self._task
        if task is None or task.done():
            return
        await asyncio.wait({task})

    async def sync_weights(self) -> NetworkWeights | None:
        """
        Refresh the snapshot's weights from the device.

        The arrays of ``network_state.weights`` are overwritten in place.

        Returns:
            The refreshed weights, or None when there is no session
        """
        generation = self._generation
        async with self._device_lock:
            session = self._session
            if session is None or generation != self._generation:
                return None
            try:
                live = await session.store.read_weights()
            finally:
                if generation != self._generation:
                    self._release_pending()
            if generation != self._generation or self._network_state is None:
                return None
            weights = self._network_state.weights
            for name, arr in live.arrays().items():
                np.copyto(getattr(weights, name), arr)
            return weights

    async def close(self) -> None:
        """Stop training and release every device resource."""
        self.stop_training()
        await self.wait()
        # A concurrent sync_weights may still be reading from the store
        async with self._device_lock:
            session, self._session = self._session, None
            if session is not None:
                self._pending_release.append(session)
            self._release_pending()
        self._network_state = None
        self._state = TrainingState.UNINITIALIZED

    async def __aenter__(self) -> TrainingOrchestrator:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _reset_counters(self) -> None:
        self._step = 0
        self._completed_epochs = 0
        self._epoch_losses.clear()
        self._epoch_accuracies.clear()

    def _initialize(self) -> None:
        config = self._config
        self._state = TrainingState.INITIALIZING
        weights = init_weights(config, self._rng)
        try:
            session = TrainingSession.open(config, self.settings, weights)
        except Exception as exc:
            self._state = TrainingState.UNINITIALIZED
            self.last_error = exc
            logger.error("Failed to initialize network: %s", exc)
            raise
        self._session = session
        self._network_state = NetworkState(
            input_layer=(0.0,) * config.input_size,
            hidden_layer=(0.0,) * config.hidden_size,
            output_layer=(0.0,) * config.output_size,
            weights=weights,
        )
        self._state = TrainingState.READY
        logger.info("Network initialized: %s", config.to_dict())

    def _cancel_pending_frame(self) -> None:
        """Cancel the loop task if it is only waiting for its next frame."""
        task = self._task
        if task is None or task.done() or self._in_step:
            return
        if task is asyncio.current_task():
            return
        task.cancel()

    def _release_pending(self) -> None:
        while self._pending_release:
            self._pending_release.pop().close()

    async def _run(self, generation: int) -> None:
        try:
            while not self._stop_requested and generation == self._generation:
                if self._completed_epochs >= self._max_epochs:
                    logger.info("Reached max epochs (%d)", self._max_epochs)
                    self.stop_training()
                    break
                await self._train_step(generation)
                if self._stop_requested or generation != self._generation:
                    break
                await self._scheduler.next_frame()
        except asyncio.CancelledError:
            if generation == self._generation and self._state is TrainingState.TRAINING:
                logger.warning("Training loop cancelled after %d steps", self._step)
                self.stop_training()
            raise
        except Exception as exc:
            if generation == self._generation:
                self._fail(exc)
            else:
                logger.debug("Discarding failure of a superseded step: %s", exc)
        finally:
            self._in_step = False
            if not self._device_lock.locked():
                self._release_pending()

    async def _train_step(self, generation: int) -> None:
        session = self._session
        if session is None:
            raise DeviceFault("No active training session")
        step = self._step
        input_vec, target_vec = sample(step, session.config)

        async with self._device_lock:
            self._in_step = True
            try:
                result, cancelled = await self._finish_step(
                    self._executor.step(session.store, session.kernels, input_vec, target_vec)
                )
            finally:
                self._in_step = False

        if generation != self._generation:
            logger.debug("Discarding step %d of a superseded config", step)
        else:
            self._record_step(step, input_vec, target_vec, result, generation)
        if cancelled:
            raise asyncio.CancelledError()

    @staticmethod
    async def _finish_step(coro):
        """
        Run one step to completion even if the loop task is cancelled meanwhile.

        Returns the step result and whether a cancellation arrived, so the
        caller can record the step before honouring it.
        """
        task = asyncio.ensure_future(coro)
        cancelled = False
        while not task.done():
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if task.cancelled():
                    raise
                cancelled = True
        return task.result(), cancelled

    def _record_step(self, step, input_vec, target_vec, result, generation: int) -> None:
        self._step = step + 1
        epoch = epoch_for_step(step)
        prediction = float(result.output_layer[0])
        self._sample_history.append(
            SampleHistory(
                epoch=epoch,
                input=tuple(float(v) for v in input_vec),
                target=float(target_vec[0]),
                prediction=prediction,
                loss=result.loss,
            )
        )
        weights = self._network_state.weights if self._network_state else None
        self._network_state = NetworkState(
            input_layer=tuple(float(v) for v in input_vec),
            hidden_layer=tuple(float(v) for v in result.hidden_layer),
            output_layer=tuple(float(v) for v in result.output_layer),
            weights=weights,
        )
        self._metrics = TrainingMetrics(
            loss=result.loss,
            epoch=self._step // STEPS_PER_EPOCH,
            accuracy=float(result.accuracy),
        )
        self._epoch_losses.append(result.loss)
        self._epoch_accuracies.append(result.accuracy)
        self._emit("step", result)
        if generation != self._generation:
            return

        if self._step % STEPS_PER_EPOCH == 0:
            self._close_epoch()

    def _close_epoch(self) -> None:
        self._completed_epochs += 1
        loss = float(np.mean(self._epoch_losses))
        accuracy = float(np.mean(self._epoch_accuracies))
        record = EpochMetrics(epoch=self._completed_epochs, loss=loss, accuracy=accuracy)
        self._epoch_metrics.append(record)
        self._metrics = TrainingMetrics(loss=loss, epoch=self._completed_epochs, accuracy=accuracy)
        self._epoch_losses.clear()
        self._epoch_accuracies.clear()
        logger.info(
            "Epoch %d/%d: loss=%.6f accuracy=%.2f",
            record.epoch,
            self._max_epochs,
            loss,
            accuracy,
        )
        self._emit("epoch", record)

    def _fail(self, exc: Exception) -> None:
        logger.exception("Training loop failed: %s", exc)
        self.last_error = exc
        self._stop_requested = True
        if isinstance(exc, DeviceFault) and self._session is not None:
            # The session is unusable; the next start re-initializes
            self._pending_release.append(self._session)
            self._session = None
        self._emit("error", exc)
        if self._state is TrainingState.TRAINING:
            self._state = TrainingState.STOPPED
            self._emit("stopped")
