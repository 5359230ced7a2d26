import argparse
import logging
import random
from argparse import Namespace as Args
from typing import Optional

from chaincrf.config import CRFTrainConfig
from chaincrf.conll import evaluation_sequences, labeled_sequences, predicates_from_template, read_data, save_model
from chaincrf.crf import CRFModel, CRFTrainer
from chaincrf.evaluation import Evaluation, TrainCriterion
from chaincrf.io_utils import lines_from_path
from chaincrf.parallel import MapReduceExecutor

logger = logging.getLogger(__name__)


def parse_args(args: Optional[list[str]] = None) -> Args:
    parser = argparse.ArgumentParser(description="Train a linear-chain CRF on CoNLL-formatted data")
    parser.add_argument("--template", type=str, required=True, help="Path to a CRF++-style feature template file")
    parser.add_argument("--train-data", type=str, required=True, help="Path to labeled CoNLL training data")
    parser.add_argument("--model", type=str, required=True, help="Path to write the trained model to")
    parser.add_argument("--sigma-sq", type=float, default=1.0, help="Variance of the L2 prior on weights")
    parser.add_argument("--num-threads", type=int, default=1, help="Number of map-reduce worker threads")
    parser.add_argument(
        "--feature-keep-prob", type=float, default=1.0, help="Probability of keeping each predicate occurrence"
    )
    parser.add_argument(
        "--min-expected-feature-count",
        type=int,
        default=0,
        help="Keep each predicate occurrence with probability 1/N; overrides --feature-keep-prob when positive",
    )
    parser.add_argument("--max-train-iters", type=int, default=150, help="Maximum number of optimizer iterations")
    parser.add_argument("--lbfgs-history-size", type=int, default=3, help="Number of L-BFGS curvature pairs to keep")
    parser.add_argument(
        "--test-split-ratio",
        type=float,
        default=0.0,
        help="Fraction of training sequences held out for early stopping; 0 disables it",
    )
    parser.add_argument(
        "--max-num-dip-iters", type=int, default=0, help="Consecutive held-out accuracy dips tolerated before stopping"
    )
    parser.add_argument("--seed", type=int, default=0, help="Random seed for the held-out split and feature pruning")
    return parser.parse_args(args)


def split_data(data: list, test_split_ratio: float, seed: int) -> tuple[list, list]:
    """Shuffle and split sequences into (train, held-out) lists."""
    if test_split_ratio <= 0.0:
        return list(data), []
    data = list(data)
    random.Random(seed).shuffle(data)
    num_test = int(len(data) * test_split_ratio)
    return data[num_test:], data[:num_test]


def build_config(args: Args) -> CRFTrainConfig:
    """Map command-line options onto a training config.

    A positive ``--min-expected-feature-count`` overrides ``--feature-keep-prob``.
    """
    options = dict(
        sigma_sq=args.sigma_sq,
        max_iterations=args.max_train_iters,
        lbfgs_history_size=args.lbfgs_history_size,
        num_threads=args.num_threads,
        random_seed=args.seed,
    )
    if args.min_expected_feature_count > 0:
        return CRFTrainConfig.with_min_expected_feature_count(args.min_expected_feature_count, **options)
    return CRFTrainConfig(feature_acceptance_probability=args.feature_keep_prob, **options)


def train(args: Args) -> CRFModel:
    template_lines = list(lines_from_path(args.template))
    predicate_extractor = predicates_from_template(template_lines)
    logger.info(
        f"Loaded {len(predicate_extractor.node_templates)} node and "
        f"{len(predicate_extractor.edge_templates)} edge templates from {args.template}"
    )
    all_data = read_data(lines_from_path(args.train_data), labeled=True)
    train_data, test_data = split_data(all_data, args.test_split_ratio, args.seed)
    logger.info(f"Loaded {len(all_data)} sequences; training on {len(train_data)}, holding out {len(test_data)}")

    config = build_config(args)
    eval_executor = None
    criterion = None
    if test_data:
        eval_executor = MapReduceExecutor(args.num_threads, name="crf-train-eval")
        held_out = evaluation_sequences(test_data)
        criterion = TrainCriterion(
            lambda model: Evaluation.compute(model, held_out, eval_executor).token_accuracy,
            max_num_dip_iters=args.max_num_dip_iters,
        )
        config.iter_callback = criterion

    try:
        train_labeled = labeled_sequences(train_data)
        trainer = CRFTrainer(train_labeled, predicate_extractor, config)
        model = trainer.train(train_labeled)
    finally:
        if eval_executor is not None:
            eval_executor.shutdown()

    if criterion is not None and criterion.best_model is not None:
        logger.info(f"Using best held-out model from {criterion.num_iters} evaluated iterations")
        model = criterion.best_model

    train_eval = Evaluation.compute(model, evaluation_sequences(train_data))
    logger.info(f"Train token accuracy: {train_eval.token_accuracy:.4f} over {train_eval.num_tokens} tokens")
    if test_data:
        test_eval = Evaluation.compute(model, evaluation_sequences(test_data))
        logger.info(f"Held-out token accuracy: {test_eval.token_accuracy:.4f} over {test_eval.num_tokens} tokens")
        logger.info(f"Held-out per-state metrics:\n{test_eval.state_metrics.to_string(index=False)}")

    with open(args.model, "wb") as f:
        save_model(f, template_lines, model.feature_encoder, model.weights())
    logger.info(f"Saved model to {args.model}")
    return model


def main(args: Optional[list[str]] = None) -> None:
    train(parse_args(args))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    main()
