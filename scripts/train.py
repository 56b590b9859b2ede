#!/usr/bin/env python3
"""Train Skip Transcoders on stored activations and analyze them.

Usage:
    # Train every configured layer with the default config
    python scripts/train.py

    # Train with a custom config and store
    python scripts/train.py --config configs/default.yaml --store store

    # Train layers 0-2 of session 3, analyze them and link them into circuits
    python scripts/train.py --session 3 --layers 0 1 2 --analyze --circuits

    # Report the top activations of the first 5 features of each layer
    python scripts/train.py --feature-reports 5

    # Also compute mean-pooling embeddings of each layer's activations
    python scripts/train.py --embeddings mean_pooling
"""

import argparse
import json
import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel

from transcoder_lens.analysis.circuits import JsonlCircuitQueue
from transcoder_lens.analysis.embeddings import EmbeddingMethod
from transcoder_lens.config import ExperimentConfig
from transcoder_lens.data.store import LocalBlobStore
from transcoder_lens.service import TranscoderService

console = Console()


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Train Skip Transcoders on captured layer activations",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/default.yaml"),
        help="Path to configuration YAML file",
    )
    parser.add_argument(
        "--store",
        type=Path,
        default=None,
        help="Store root directory (overrides config)",
    )
    parser.add_argument(
        "--session",
        type=int,
        default=None,
        help="Activation capture session id (overrides config)",
    )
    parser.add_argument(
        "--layers",
        type=int,
        nargs="+",
        default=None,
        help="Layer indices to train (overrides config)",
    )
    parser.add_argument(
        "--analyze",
        action="store_true",
        help="Run interpretability analysis on each trained layer",
    )
    parser.add_argument(
        "--circuits",
        action="store_true",
        help="Discover circuits across the trained layers",
    )
    parser.add_argument(
        "--embeddings",
        type=str,
        default=None,
        choices=[m.value for m in EmbeddingMethod],
        help="Compute embeddings of each layer's activations with this method",
    )
    parser.add_argument(
        "--feature-reports",
        type=int,
        default=0,
        metavar="N",
        help="Write top-activation reports for the first N discovered features of each layer",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed (overrides config)",
    )
    return parser.parse_args()


def setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def save_json(data, path: Path) -> None:
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    console.print(f"[green]Saved {path}[/green]")


def train_layer(
    service: TranscoderService,
    config: ExperimentConfig,
    layer_idx: int,
    run_dir: Path,
    analyze: bool,
    embedding_method: str | None,
    feature_reports: int = 0,
) -> bool:
    """Train, and optionally analyze, the transcoder for one layer.

    Returns:
        True if a model was trained.
    """
    session_id = config.session_id
    console.print(f"\n[bold blue]Training Skip Transcoder for layer {layer_idx}[/bold blue]")

    summary = service.validate_activations(session_id, layer_idx)
    if summary.corrupted:
        console.print(f"[yellow]{summary.corrupted} of {summary.total} activations are corrupted[/yellow]")
    stats = service.activation_statistics(session_id, layer_idx)
    if stats.sample_count:
        console.print(
            f"Loaded {stats.sample_count:,} vectors, "
            f"mean norm={stats.average_magnitude:.4f}, sparsity={stats.average_sparsity:.4f}"
        )

    result = service.train(session_id, layer_idx)
    if result is None:
        console.print(f"[red]No activations found for session {session_id} layer {layer_idx}[/red]")
        return False

    console.print(
        f"Best loss {result.final_loss:.6f} after {result.epochs_run} epochs"
        + (" (stopped early)" if result.stopped_early else "")
    )
    save_json(
        [metrics.__dict__ for metrics in result.history],
        run_dir / f"metrics_layer{layer_idx}.json",
    )

    features = service.load_features(session_id, layer_idx)
    console.print(f"Discovered {len(features)} features")

    if feature_reports > 0 and features:
        reports = [
            service.analyze_feature(session_id, layer_idx, feature.feature_index)
            for feature in features[:feature_reports]
        ]
        for report in reports:
            console.print(
                f"  Feature {report['feature_idx']}: {report['total_activations']} activations, "
                f"{report['possible_concept']}"
            )
        save_json(reports, run_dir / f"feature_reports_layer{layer_idx}.json")

    if analyze or embedding_method:
        activations = service.sample_activations(session_id, layer_idx)

        if analyze:
            report = service.analyze_interpretability(result.model, activations)
            if report is not None:
                console.print(Panel(report.summary, title=f"Layer {layer_idx}", border_style="blue"))
                save_json(report.to_dict(), run_dir / f"interpretability_layer{layer_idx}.json")

        if embedding_method:
            embeddings = service.compute_embeddings(activations, method=embedding_method)
            save_json(
                [e.to_dict() for e in embeddings],
                run_dir / f"embeddings_layer{layer_idx}.json",
            )

    return True


def main() -> None:
    """Main entry point."""
    args = parse_args()
    setup_logging()

    console.print(Panel.fit(
        "[bold cyan]Skip Transcoder Training[/bold cyan]\n"
        "Train sparse transcoders on captured activations",
        border_style="cyan",
    ))

    if args.config.exists():
        config = ExperimentConfig.from_yaml(args.config)
        console.print(f"Loaded config from {args.config}")
    else:
        config = ExperimentConfig()
        console.print("Using default configuration")

    # Override from command line
    if args.store is not None:
        config.store.root = args.store
    if args.session is not None:
        config.session_id = args.session
    if args.layers is not None:
        config.layers = args.layers
    if args.seed is not None:
        config.training.seed = args.seed
        config.transcoder.seed = args.seed
        config.embeddings.seed = args.seed
    # Re-run validation over the overrides
    config = ExperimentConfig.model_validate(config.model_dump())

    console.print(Panel.fit(
        f"Store: {config.store.root}\n"
        f"Session: {config.session_id}\n"
        f"Layers: {config.layers}\n"
        f"Latent dim: {config.transcoder.latent_dim}\n"
        f"Sparsity penalty: {config.training.sparsity_penalty}\n"
        f"Learning rate: {config.training.learning_rate}\n"
        f"Max epochs: {config.training.max_epochs}\n"
        f"Update rule: {config.training.update_rule}",
        title="Configuration",
        border_style="blue",
    ))

    run_dir = config.get_run_dir()
    config.to_yaml(run_dir / "config.yaml")

    store = LocalBlobStore(config.store.root, max_activations=config.store.max_activations)
    queue = JsonlCircuitQueue(run_dir / "circuit_queue.jsonl") if args.circuits else None
    service = TranscoderService(store, queue=queue, config=config, show_progress=True)

    trained_layers = [
        layer_idx
        for layer_idx in config.layers
        if train_layer(
            service,
            config,
            layer_idx,
            run_dir,
            args.analyze,
            args.embeddings,
            args.feature_reports,
        )
    ]

    if args.circuits:
        console.print("\n[bold]Discovering circuits...[/bold]")
        features_by_layer = {
            layer_idx: service.load_features(config.session_id, layer_idx)
            for layer_idx in trained_layers
        }
        circuits = service.discover_circuits(features_by_layer)
        console.print(f"Found {len(circuits)} circuits, queued to {queue.path}")
        for circuit in circuits[:10]:
            console.print(
                f"  {circuit.source_feature_id} -> {circuit.target_feature_id} "
                f"[{circuit.circuit_type.value}] strength={circuit.strength:.4f}"
            )
        save_json([c.to_dict() for c in circuits], run_dir / "circuits.json")

    console.print(f"\n[bold green]Training complete! Trained {len(trained_layers)} layer(s)[/bold green]")


if __name__ == "__main__":
    main()
