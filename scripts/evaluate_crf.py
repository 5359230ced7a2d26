import argparse
import logging
import time
from argparse import Namespace as Args
from typing import Optional

from chaincrf.conll import evaluation_sequences, load_model, read_data
from chaincrf.evaluation import Evaluation
from chaincrf.io_utils import lines_from_path
from chaincrf.parallel import MapReduceExecutor

logger = logging.getLogger(__name__)


def parse_args(args: Optional[list[str]] = None) -> Args:
    parser = argparse.ArgumentParser(description="Evaluate a trained CRF on labeled CoNLL-formatted data")
    parser.add_argument("--model", type=str, required=True, help="Path to a model written by train_crf.py")
    parser.add_argument("--data", type=str, required=True, help="Path to labeled CoNLL evaluation data")
    parser.add_argument("--num-threads", type=int, default=1, help="Number of map-reduce worker threads")
    return parser.parse_args(args)


def evaluate_model(model_path: str, data_path: str, num_threads: int = 1) -> tuple[Evaluation, float]:
    """Load a model and tag every sequence in a labeled data file.

    Parameters
    ----------
    model_path : str
        Path to a saved model
    data_path : str
        Path to labeled CoNLL data
    num_threads : int
        Worker threads used for tagging

    Returns
    -------
    tuple[Evaluation, float]
        The evaluation and the mean wall-clock milliseconds spent per sequence
    """
    with open(model_path, "rb") as f:
        model = load_model(f)
    data = evaluation_sequences(read_data(lines_from_path(data_path), labeled=True))
    logger.info(f"Evaluating {model_path} on {len(data)} sequences from {data_path}")
    start = time.time()
    with MapReduceExecutor(num_threads, name="crf-eval") as executor:
        evaluation = Evaluation.compute(model, data, executor)
    elapsed_ms = (time.time() - start) * 1000
    ms_per_example = elapsed_ms / len(data) if data else 0.0
    return evaluation, ms_per_example


def main(args: Optional[list[str]] = None) -> None:
    args = parse_args(args)
    evaluation, ms_per_example = evaluate_model(args.model, args.data, args.num_threads)
    logger.info(f"Token accuracy: {evaluation.token_accuracy:.4f} over {evaluation.num_tokens} tokens")
    logger.info(f"Per-state metrics:\n{evaluation.state_metrics.to_string(index=False)}")
    logger.info(f"Took {ms_per_example:.2f} ms per example")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    main()
