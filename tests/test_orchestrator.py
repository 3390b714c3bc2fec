"""Tests for engine.orchestrator module (CPU backend)."""

import asyncio

import numpy as np
import pytest

try:
    from gpunet.config import NeuralNetworkConfig, TrainerSettings
    from gpunet.engine.orchestrator import TrainingOrchestrator, TrainingState
    from gpunet.errors import DeviceFault, InvalidConfig, UnsupportedBackend
    from gpunet.records import NetworkWeights, TrainingMetrics
except ImportError:
    pytest.skip("gpunet not available", allow_module_level=True)


def _orchestrator(max_epochs=1, config=None, **settings):
    settings.setdefault("seed", 1234)
    return TrainingOrchestrator(
        config or NeuralNetworkConfig(),
        TrainerSettings(backend="cpu", max_epochs=max_epochs, **settings),
    )


def _train(orch):
    """Run one start_training to completion and close."""

    async def run():
        await orch.start_training()
        await orch.wait()

    asyncio.run(run())


class TestTrainingRun:
    """End-to-end runs of the training loop."""

    def test_single_epoch(self):
        """One epoch of the default config gives 4 samples and 1 epoch record."""
        orch = _orchestrator(max_epochs=1)
        _train(orch)
        assert len(orch.sample_history) == 4
        assert len(orch.epoch_metrics) == 1
        assert orch.epoch_metrics[0].epoch == 1
        assert orch.state is TrainingState.STOPPED
        assert not orch.is_training
        assert orch.last_error is None

    def test_weight_sizes_after_init(self):
        """Weights are sized from the config after initialization."""
        cfg = NeuralNetworkConfig(input_size=3, hidden_size=5, output_size=2)
        orch = _orchestrator(max_epochs=0, config=cfg)
        _train(orch)
        w = orch.network_state.weights
        assert len(w.weights_hidden) == 3 * 5
        assert len(w.weights_output) == 5 * 2
        assert len(w.bias_hidden) == 5
        assert len(w.bias_output) == 2

    def test_max_epochs_zero_runs_no_step(self):
        """With max_epochs=0 the loop stops before any step."""
        orch = _orchestrator(max_epochs=0)
        _train(orch)
        assert orch.sample_history == ()
        assert orch.state is TrainingState.STOPPED

    def test_halts_at_max_epochs(self):
        """Training stops exactly at the epoch limit."""
        orch = _orchestrator(max_epochs=3)
        _train(orch)
        assert orch.total_steps == 12
        assert orch.total_steps // 4 == orch.completed_epochs == 3
        assert len(orch.sample_history) == 12
        assert len(orch.epoch_metrics) == 3

    def test_row_order(self):
        """Steps visit the truth table in order."""
        orch = _orchestrator(max_epochs=2)
        _train(orch)
        inputs = [s.input for s in orch.sample_history]
        assert inputs == [(0.0, 0.0), (0.0, 1.0), (1.0, 0.0), (1.0, 1.0)] * 2
        assert [s.target for s in orch.sample_history] == [0.0, 1.0, 1.0, 0.0] * 2

    def test_history_epochs(self):
        """Sample records carry their 1-based epoch."""
        orch = _orchestrator(max_epochs=2)
        _train(orch)
        assert [s.epoch for s in orch.sample_history] == [1, 1, 1, 1, 2, 2, 2, 2]
        assert [e.epoch for e in orch.epoch_metrics] == [1, 2]

    def test_epoch_metrics_are_means(self):
        """Epoch loss and accuracy are the means of the four step values."""
        orch = _orchestrator(max_epochs=2)
        _train(orch)
        history = orch.sample_history
        for i, record in enumerate(orch.epoch_metrics):
            steps = history[4 * i : 4 * i + 4]
            assert record.loss == pytest.approx(np.mean([s.loss for s in steps]))
            hits = [(s.prediction >= 0.5) == (s.target == 1.0) for s in steps]
            expected_acc = np.mean([float(h) for h in hits])
            assert record.accuracy == pytest.approx(expected_acc)
        last = orch.epoch_metrics[-1]
        assert orch.metrics == TrainingMetrics(
            loss=last.loss, epoch=last.epoch, accuracy=last.accuracy
        )

    def test_network_state_replaced(self):
        """Each step publishes a fresh state with the same weights object."""
        orch = _orchestrator(max_epochs=1)

        async def run():
            await orch.start_training()
            initial = orch.network_state
            await orch.wait()
            return initial

        initial = asyncio.run(run())
        assert initial.hidden_layer == (0.0,) * 4
        final = orch.network_state
        assert final is not initial
        assert final.weights is initial.weights
        assert final.input_layer == (1.0, 1.0)
        assert len(final.hidden_layer) == 4
        assert final.output_layer[0] == pytest.approx(orch.sample_history[-1].prediction)

    def test_restart_resets_counters(self):
        """A second start resets counters but keeps the session and history."""
        orch = _orchestrator(max_epochs=1)

        async def run():
            await orch.start_training()
            await orch.wait()
            weights = orch.network_state.weights
            await orch.start_training()
            await orch.wait()
            return weights

        weights = asyncio.run(run())
        assert orch.network_state.weights is weights
        assert orch.total_steps == 4
        assert len(orch.sample_history) == 8
        assert [e.epoch for e in orch.epoch_metrics] == [1, 1]

    def test_restart_reuses_kernels(self):
        """A restart without update_config keeps the session and its bound kernels."""
        orch = _orchestrator(max_epochs=1)

        async def run():
            await orch.start_training()
            await orch.wait()
            session = orch._session
            kernels = session.kernels
            await orch.start_training()
            await orch.wait()
            return session, kernels

        session, kernels = asyncio.run(run())
        assert orch._session is session
        assert session.kernels is kernels
        assert len(session.cache) == 1
        assert session.cache.misses == 1

    def test_start_while_training_is_noop(self):
        """Calling start_training while training changes nothing."""
        orch = _orchestrator(max_epochs=2, frame_interval=0.001)

        async def run():
            await orch.start_training()
            task = orch._task
            await orch.start_training()
            assert orch._task is task
            await orch.wait()

        asyncio.run(run())
        assert len(orch.sample_history) == 8

    def test_xor_loss_decreases(self):
        """With a high learning rate the epoch loss falls."""
        orch = _orchestrator(
            max_epochs=3000, config=NeuralNetworkConfig(hidden_size=4, learning_rate=2.0), seed=3
        )
        _train(orch)
        assert orch.epoch_metrics[-1].loss < orch.epoch_metrics[0].loss
        assert all(h.loss >= 0.0 for h in orch.sample_history)
        assert all(e.accuracy in (0.0, 0.25, 0.5, 0.75, 1.0) for e in orch.epoch_metrics)


class TestStopAndConfig:
    """Tests for stop_training, set_max_epochs and update_config."""

    def test_stop_twice(self):
        """stop_training twice leaves STOPPED without error."""
        orch = _orchestrator(max_epochs=100, frame_interval=0.001)

        async def run():
            await orch.start_training()
            await asyncio.sleep(0.01)
            orch.stop_training()
            orch.stop_training()
            await orch.wait()

        asyncio.run(run())
        assert orch.state is TrainingState.STOPPED
        assert orch.last_error is None
        assert len(orch.sample_history) < 400

    def test_stop_before_training(self):
        """stop_training on an idle orchestrator is harmless."""
        orch = _orchestrator()
        orch.stop_training()
        assert orch.state is TrainingState.UNINITIALIZED

    def test_stop_keeps_completed_steps(self):
        """Every recorded step finished; no partial records remain."""
        orch = _orchestrator(max_epochs=100)

        async def run():
            await orch.start_training()
            for _ in range(10):
                await asyncio.sleep(0)
            orch.stop_training()
            await orch.wait()

        asyncio.run(run())
        assert orch.total_steps == len(orch.sample_history)
        assert len(orch.epoch_metrics) == orch.total_steps // 4

    def test_set_max_epochs_while_training(self):
        """Lowering the limit mid-run stops at the new limit."""
        orch = _orchestrator(max_epochs=1000)
        seen = []

        def on_event(event):
            if event.kind == "epoch":
                seen.append(event.epoch)
                if event.epoch == 2:
                    orch.set_max_epochs(2)

        orch.add_listener(on_event)
        _train(orch)
        assert orch.max_epochs == 2
        assert len(orch.epoch_metrics) == 2
        assert seen == [1, 2]

    def test_set_max_epochs_invalid(self):
        """Negative or non-integer limits are rejected."""
        orch = _orchestrator()
        with pytest.raises(InvalidConfig):
            orch.set_max_epochs(-1)
        with pytest.raises(InvalidConfig):
            orch.set_max_epochs(1.5)

    def test_update_config_resizes(self):
        """After update_config the next start builds weights for the new size."""
        orch = _orchestrator(max_epochs=1)

        async def run():
            await orch.start_training()
            await orch.wait()
            old_state = orch.network_state
            orch.update_config(hidden_size=6)
            assert orch.network_state is None
            assert orch.sample_history == ()
            assert orch.epoch_metrics == ()
            assert orch.state is TrainingState.UNINITIALIZED
            await orch.start_training()
            await orch.wait()
            return old_state

        old_state = asyncio.run(run())
        assert orch.config.hidden_size == 6
        new_state = orch.network_state
        assert new_state is not old_state
        assert new_state.weights is not old_state.weights
        assert len(new_state.weights.weights_hidden) == 2 * 6
        assert len(new_state.weights.weights_output) == 6
        assert len(new_state.hidden_layer) == 6
        assert len(orch.sample_history) == 4

    def test_update_config_invalid(self):
        """Invalid changes raise and leave the config untouched."""
        orch = _orchestrator()
        with pytest.raises(InvalidConfig):
            orch.update_config(learning_rate=0)
        with pytest.raises(InvalidConfig):
            orch.update_config(depth=3)
        assert orch.config == NeuralNetworkConfig()

    def test_update_config_while_training(self):
        """Reconfiguring mid-run stops the loop and releases the old session."""
        orch = _orchestrator(max_epochs=1000)

        async def run():
            await orch.start_training()
            for _ in range(20):
                await asyncio.sleep(0)
            session = orch._session
            device = session.device
            orch.update_config(learning_rate=0.1)
            await orch.wait()
            return session, device

        session, device = asyncio.run(run())
        assert session.closed
        assert device.released
        assert orch.sample_history == ()
        assert orch.network_state is None
        assert orch.state is TrainingState.UNINITIALIZED
        assert orch.last_error is None

    def test_update_config_before_init(self):
        """update_config is valid before any training."""
        orch = _orchestrator()
        cfg = orch.update_config(output_size=2)
        assert cfg.output_size == 2
        assert orch.network_state is None


class TestErrors:
    """Failure paths."""

    def test_unsupported_backend(self, monkeypatch):
        """A missing Vulkan loader surfaces to the caller of start_training."""
        import gpunet.backend.session as session_mod

        monkeypatch.setattr(session_mod, "VULKAN_AVAILABLE", False)
        orch = TrainingOrchestrator(settings=TrainerSettings(backend="vulkan"))
        with pytest.raises(UnsupportedBackend):
            asyncio.run(orch.start_training())
        assert orch.state is TrainingState.UNINITIALIZED
        assert orch.network_state is None
        assert isinstance(orch.last_error, UnsupportedBackend)

    def test_layer_too_wide(self):
        """A layer wider than the device limit is rejected before allocation."""
        orch = _orchestrator(config=NeuralNetworkConfig(hidden_size=4096))
        with pytest.raises(InvalidConfig):
            asyncio.run(orch.start_training())
        assert orch.state is TrainingState.UNINITIALIZED

    def test_device_fault_stops_loop(self, monkeypatch):
        """A dispatch failure stops training with last_error set."""
        from gpunet.backend.cpu import CpuDevice

        calls = {"n": 0}
        real_dispatch = CpuDevice.dispatch

        def flaky(self, bound, work_items):
            calls["n"] += 1
            if calls["n"] == 5:
                raise DeviceFault("device lost")
            return real_dispatch(self, bound, work_items)

        monkeypatch.setattr(CpuDevice, "dispatch", flaky)
        orch = _orchestrator(max_epochs=10)
        events = []
        orch.add_listener(lambda e: events.append(e.kind))
        _train(orch)

        # Steps 0 and 1 completed; step 2 failed on its forward dispatch
        assert isinstance(orch.last_error, DeviceFault)
        assert orch.state is TrainingState.STOPPED
        assert orch.total_steps == 2
        assert len(orch.sample_history) == 2
        assert orch.epoch_metrics == ()
        assert "error" in events and events[-1] == "stopped"
        assert orch.device_info is None

    def test_restart_after_fault(self, monkeypatch):
        """After a fault the next start re-initializes the session."""
        from gpunet.backend.cpu import CpuDevice

        real_dispatch = CpuDevice.dispatch
        state = {"fail": True}

        def flaky(self, bound, work_items):
            if state["fail"]:
                state["fail"] = False
                raise DeviceFault("transient")
            return real_dispatch(self, bound, work_items)

        monkeypatch.setattr(CpuDevice, "dispatch", flaky)
        orch = _orchestrator(max_epochs=1)

        async def run():
            await orch.start_training()
            await orch.wait()
            assert isinstance(orch.last_error, DeviceFault)
            await orch.start_training()
            await orch.wait()

        asyncio.run(run())
        assert orch.last_error is None
        assert len(orch.epoch_metrics) == 1

    def test_listener_failure_does_not_stop_training(self):
        """A raising listener is logged and training continues."""
        orch = _orchestrator(max_epochs=1)

        def bad_listener(event):
            raise RuntimeError("boom")

        orch.add_listener(bad_listener)
        _train(orch)
        assert len(orch.sample_history) == 4
        assert orch.last_error is None


class TestSupplements:
    """Listeners, recent samples, weight sync, device info and close."""

    def test_events(self):
        """Listeners receive step, epoch and stopped events in order."""
        orch = _orchestrator(max_epochs=1)
        events = []
        remove = orch.add_listener(events.append)
        _train(orch)
        kinds = [e.kind for e in events]
        assert kinds == ["step"] * 4 + ["epoch", "stopped"]
        assert events[4].payload == orch.epoch_metrics[0]
        remove()
        _train(orch)
        assert len(events) == 6

    def test_recent_samples(self):
        """recent_samples returns the newest records."""
        orch = _orchestrator(max_epochs=3)
        _train(orch)
        recent = orch.recent_samples(5)
        assert recent == orch.sample_history[-5:]
        assert orch.recent_samples(0) == ()
        assert len(orch.recent_samples(100)) == 12

    def test_sync_weights(self):
        """sync_weights copies live device weights into the snapshot in place."""
        orch = _orchestrator(max_epochs=2)

        async def run():
            await orch.start_training()
            await orch.wait()
            weights = orch.network_state.weights
            before = weights.copy()
            synced = await orch.sync_weights()
            live = await orch._session.store.read_weights()
            return weights, before, synced, live

        weights, before, synced, live = asyncio.run(run())
        assert synced is weights
        np.testing.assert_array_equal(weights.weights_hidden, live.weights_hidden)
        assert not np.array_equal(before.weights_output, weights.weights_output)

    def test_sync_weights_without_session(self):
        """sync_weights returns None before initialization."""
        orch = _orchestrator()
        assert asyncio.run(orch.sync_weights()) is None

    def test_device_info(self):
        """device_info reports the CPU device once initialized."""
        orch = _orchestrator(max_epochs=0)
        assert orch.device_info is None
        _train(orch)
        info = orch.device_info
        assert info.backend == "cpu"
        assert info.max_work_items >= 4

    def test_async_context_manager(self):
        """Leaving the context releases the device."""

        async def run():
            async with _orchestrator(max_epochs=1) as orch:
                await orch.start_training()
                await orch.wait()
                device = orch._session.device
            return orch, device

        orch, device = asyncio.run(run())
        assert device.released
        assert orch.network_state is None
        assert orch.state is TrainingState.UNINITIALIZED
        assert len(orch.sample_history) == 4

    def test_close_waits_for_sync_weights(self):
        """close() lets a concurrent sync_weights finish before releasing."""
        orch = _orchestrator(max_epochs=1)

        async def run():
            await orch.start_training()
            await orch.wait()
            weights = orch.network_state.weights
            device = orch._session.device
            results = await asyncio.gather(
                orch.sync_weights(), orch.close(), return_exceptions=True
            )
            return weights, device, results

        weights, device, (synced, closed) = asyncio.run(run())
        assert isinstance(synced, NetworkWeights)
        assert synced is weights
        assert closed is None
        assert device.released
        assert orch.state is TrainingState.UNINITIALIZED


class TestCancellation:
    """Cancelled waiters and a cancelled loop task."""

    def test_wait_timeout_keeps_training(self):
        """A timed-out wait leaves the loop running to its epoch limit."""
        orch = _orchestrator(max_epochs=50, frame_interval=0.001)

        async def run():
            await orch.start_training()
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(orch.wait(), 0.01)
            assert orch.is_training
            assert not orch._task.done()
            device = orch._session.device
            await orch.wait()
            return device

        device = asyncio.run(run())
        assert orch.state is TrainingState.STOPPED
        assert orch.last_error is None
        assert orch.completed_epochs == 50
        assert orch.total_steps == 200
        assert len(device.dispatch_log) == 2 * orch.total_steps

    @pytest.mark.parametrize("spins", [1, 2, 3, 4, 5, 6, 7])
    def test_cancelled_waiter(self, spins):
        """Cancelling a waiter never interrupts a step."""
        orch = _orchestrator(max_epochs=2)

        async def run():
            await orch.start_training()
            waiter = asyncio.get_running_loop().create_task(orch.wait())
            for _ in range(spins):
                await asyncio.sleep(0)
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)
            assert waiter.cancelled()
            assert not orch._task.cancelled()
            device = orch._session.device
            await orch.wait()
            return device

        device = asyncio.run(run())
        assert orch.state is TrainingState.STOPPED
        assert orch.total_steps == 8
        assert len(orch.sample_history) == 8
        assert len(device.dispatch_log) == 16

    def test_cancelled_loop_finishes_step(self):
        """Cancelling the loop mid-step records that step, then stops."""
        orch = _orchestrator(max_epochs=1000)
        events = []
        orch.add_listener(lambda e: events.append(e.kind))

        async def run():
            await orch.start_training()
            for _ in range(1000):
                await asyncio.sleep(0)
                if orch._in_step:
                    break
            assert orch._in_step
            steps_before = orch.total_steps
            task = orch._task
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return task, steps_before, orch._session.device

        task, steps_before, device = asyncio.run(run())
        assert task.cancelled()
        assert orch.total_steps == steps_before + 1
        assert len(orch.sample_history) == orch.total_steps
        assert len(device.dispatch_log) == 2 * orch.total_steps
        assert orch.state is TrainingState.STOPPED
        assert not orch.is_training
        assert orch.last_error is None
        assert events[-1] == "stopped"
