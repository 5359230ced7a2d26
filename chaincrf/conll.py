"""CoNLL-style tabular sequence data with CRF++-style feature templates.

Data files hold one token per line with tab-separated columns; for labeled data
the last column is the label. Blank lines separate sequences. Every sequence is
padded with a start row and a stop row.

Template lines starting with ``U`` define node predicates and lines starting
with ``B`` define edge predicates, e.g. ``U01:%x[-1,0]/%x[0,0]`` joins column 0
of the previous and current rows. Other lines are ignored.
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Iterable, Sequence

import numpy as np

from chaincrf import io_utils
from chaincrf.crf import CRFModel
from chaincrf.encoding import CRFWeightsEncoder
from chaincrf.errors import ConfigurationError, DataError
from chaincrf.features import CRFFeatureEncoder, CRFPredicateExtractor
from chaincrf.indexer import Indexer
from chaincrf.state_space import StateSpace

logger = logging.getLogger(__name__)

START_STATE = "<s>"
STOP_STATE = "</s>"
DATA_VERSION = "1.1"


@dataclass(frozen=True)
class Row:
    """Feature columns of one token and, for labeled data, its label."""

    features: tuple[str, ...]
    label: str | None = None

    def as_labeled_pair(self) -> tuple[str, "Row"]:
        """(label, row) pair for evaluation."""
        if self.label is None:
            raise DataError("Must be a labeled example")
        return self.label, self


START_ROW = Row((START_STATE,), START_STATE)
STOP_ROW = Row((STOP_STATE,), STOP_STATE)


def _chunked_lines(lines: Iterable[str]) -> list[list[str]]:
    chunks = []
    cur = []
    for line in lines:
        if line.strip():
            cur.append(line)
        elif cur:
            chunks.append(cur)
            cur = []
    if cur:
        chunks.append(cur)
    return chunks


def read_datum(lines: Sequence[str], labeled: bool) -> list[Row]:
    """Parse one sequence's lines into padded rows.

    Raises
    ------
    DataError
        If a labeled line has fewer than two columns
    """
    rows = [START_ROW]
    for line in lines:
        cols = [c for c in re.split(r"\t+", line.rstrip("\n")) if c != ""]
        if labeled:
            if len(cols) < 2:
                raise DataError(f"Labeled row doesn't appear to have at least two columns: {line!r}")
            rows.append(Row(tuple(cols[:-1]), cols[-1]))
        else:
            rows.append(Row(tuple(cols)))
    rows.append(STOP_ROW)
    return rows


def read_data(lines: Iterable[str], labeled: bool) -> list[list[Row]]:
    """Parse blank-line separated sequences into padded rows."""
    return [read_datum(chunk, labeled) for chunk in _chunked_lines(lines)]


def labeled_sequences(data: Sequence[Sequence[Row]]) -> list[list[tuple[Row, str]]]:
    """(observation, label) pairs as expected by ``CRFTrainer``."""
    return [[(row, label) for label, row in (r.as_labeled_pair() for r in datum)] for datum in data]


def evaluation_sequences(data: Sequence[Sequence[Row]]) -> list[list[tuple[str, Row]]]:
    """(label, observation) pairs as expected by ``Evaluation.compute``."""
    return [[row.as_labeled_pair() for row in datum] for datum in data]


class TemplateType(Enum):
    NODE = "U"
    EDGE = "B"


_ROW_COL_PATTERN = re.compile(r"%x\[(-?\d+),(\d+)\]")


class FeatureTemplate:
    """A CRF++-style predicate template.

    Parameters
    ----------
    prefix : str
        Template name; ``U...`` for node templates and ``B...`` for edge templates
    row_cols : Sequence[tuple[int, int]]
        (relative row, column) pairs to join into the predicate value

    Raises
    ------
    ConfigurationError
        If ``prefix`` starts with neither ``U`` nor ``B``
    """

    def __init__(self, prefix: str, row_cols: Sequence[tuple[int, int]]):
        if prefix.startswith("U"):
            self.type = TemplateType.NODE
        elif prefix.startswith("B"):
            self.type = TemplateType.EDGE
        else:
            raise ConfigurationError(f"FeatureTemplate prefix must begin with 'U' or 'B', got {prefix!r}")
        self.prefix = prefix
        self.row_cols = [tuple(rc) for rc in row_cols]

    @classmethod
    def from_line_spec(cls, line: str) -> "FeatureTemplate":
        """Parse a template line such as ``U00:%x[-2,0]/%x[2,0]`` or ``B``."""
        line = line.strip()
        prefix, _, spec = line.partition(":")
        row_cols = []
        for part in spec.split("/"):
            m = _ROW_COL_PATTERN.fullmatch(part.strip())
            if m:
                row_cols.append((int(m.group(1)), int(m.group(2))))
        return cls(prefix, row_cols)

    def value(self, rows: Sequence[Row], idx: int) -> str:
        """Predicate produced by this template at position ``idx``.

        Rows outside the sequence render as ``@_X<row>`` and missing columns as
        ``@_Y<row>``.
        """
        if not self.row_cols:
            return self.prefix
        n = len(rows)
        parts = []
        for row_offset, col in self.row_cols:
            row_idx = idx + row_offset
            if row_idx < 0 or row_idx >= n:
                parts.append(f"@_X{row_idx}")
                continue
            features = rows[row_idx].features
            if col >= len(features):
                parts.append(f"@_Y{row_idx}")
                continue
            parts.append(features[col])
        return f"{self.prefix}:{'/'.join(parts)}"

    def __str__(self) -> str:
        if not self.row_cols:
            return self.prefix
        return self.prefix + ":" + "/".join(f"%x[{r},{c}]" for r, c in self.row_cols)

    def __repr__(self) -> str:
        return f"FeatureTemplate({str(self)!r})"


class TemplatePredicateExtractor(CRFPredicateExtractor[Row, str]):
    """Predicates from node and edge templates, each with value 1.0.

    Node predicates at the padded start and stop positions are cleared.
    """

    def __init__(self, node_templates: Sequence[FeatureTemplate], edge_templates: Sequence[FeatureTemplate]):
        self.node_templates = list(node_templates)
        self.edge_templates = list(edge_templates)

    @staticmethod
    def _build_pred_vals(templates: Sequence[FeatureTemplate], rows: Sequence[Row]) -> list[dict[str, float]]:
        return [{template.value(rows, idx): 1.0 for template in templates} for idx in range(len(rows))]

    def node_predicates(self, elems: Sequence[Row]) -> list[dict[str, float]]:
        preds = self._build_pred_vals(self.node_templates, elems)
        preds[0] = {}
        preds[-1] = {}
        return preds

    def edge_predicates(self, elems: Sequence[Row]) -> list[dict[str, float]]:
        return self._build_pred_vals(self.edge_templates, elems)[: len(elems) - 1]


def predicates_from_template(lines: Iterable[str]) -> TemplatePredicateExtractor:
    """Build an extractor from template lines; lines not starting with U or B are skipped."""
    templates = [FeatureTemplate.from_line_spec(line) for line in lines if line.startswith(("U", "B"))]
    return TemplatePredicateExtractor(
        [t for t in templates if t.type is TemplateType.NODE],
        [t for t in templates if t.type is TemplateType.EDGE],
    )


def save_model(
    stream: BinaryIO,
    template_lines: Sequence[str],
    feature_encoder: CRFFeatureEncoder,
    weights: np.ndarray,
) -> None:
    """Write templates, state space, predicate indices and weights."""
    io_utils.write_version(stream, DATA_VERSION)
    io_utils.save_list(stream, list(template_lines))
    feature_encoder.state_space.save(stream)
    feature_encoder.node_features.save(stream)
    feature_encoder.edge_features.save(stream)
    io_utils.save_doubles(stream, weights)


def load_model(stream: BinaryIO) -> CRFModel[str, Row]:
    """Read a model written by ``save_model``.

    Raises
    ------
    ConfigurationError
        If any component was written with a different format version or the
        weights don't match the saved indices
    """
    io_utils.ensure_version_match(stream, DATA_VERSION)
    predicate_extractor = predicates_from_template(io_utils.load_list(stream))
    state_space = StateSpace.load(stream)
    node_features = Indexer.load(stream)
    edge_features = Indexer.load(stream)
    feature_encoder = CRFFeatureEncoder(predicate_extractor, state_space, node_features, edge_features)
    weights_encoder = CRFWeightsEncoder(state_space, len(node_features), len(edge_features))
    weights = io_utils.load_doubles(stream)
    if weights.shape[0] != weights_encoder.num_parameters:
        raise ConfigurationError(
            f"Model has {weights.shape[0]} weights but indices need {weights_encoder.num_parameters}"
        )
    return CRFModel(feature_encoder, weights_encoder, weights)
