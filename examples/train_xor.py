"""Train the 2-4-1 XOR network and print per-epoch metrics."""

import argparse
import asyncio
import logging

from gpunet import NeuralNetworkConfig, TrainerSettings, TrainingOrchestrator


def main() -> None:
    parser = argparse.ArgumentParser(description="Train an MLP on XOR with GPU compute kernels")
    parser.add_argument("--backend", default=None, help="vulkan or cpu (default: GPUNET_BACKEND)")
    parser.add_argument("--epochs", type=int, default=None, help="Epochs to train")
    parser.add_argument("--hidden", type=int, default=4, help="Hidden layer width")
    parser.add_argument("--lr", type=float, default=0.5, help="Learning rate")
    parser.add_argument("--seed", type=int, default=None, help="Weight initialization seed")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between steps")
    parser.add_argument("--verbose", action="store_true", help="Log every step")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = {
        "backend": args.backend,
        "max_epochs": args.epochs,
        "seed": args.seed,
        "frame_interval": args.interval,
    }
    settings = TrainerSettings.from_env(**{k: v for k, v in overrides.items() if v is not None})
    config = NeuralNetworkConfig(hidden_size=args.hidden, learning_rate=args.lr)
    asyncio.run(train(config, settings))


async def train(config: NeuralNetworkConfig, settings: TrainerSettings) -> None:
    async with TrainingOrchestrator(config, settings) as orch:
        def on_event(event):
            if event.kind == "epoch":
                m = event.payload
                print(
                    f"Epoch {m.epoch:4d}/{orch.max_epochs}  "
                    f"loss={m.loss:.4f}  accuracy={m.accuracy:.2f}"
                )

        orch.add_listener(on_event)
        await orch.start_training()
        info = orch.device_info
        print(f"Device: {info.name} ({info.backend}, {info.device_type})")
        await orch.wait()

        if orch.last_error is not None:
            print(f"Training failed: {orch.last_error}")
            return

        await orch.sync_weights()
        print("\nLast epoch:")
        for record in orch.recent_samples(4):
            bits = ", ".join(f"{v:g}" for v in record.input)
            print(f"  [{bits}] -> {record.prediction:.3f} (target {record.target:g})")

    print("Training complete.")


if __name__ == "__main__":
    main()
