"""
Unit Tests for the Transductive Conformal Classifier
====================================================

Covers:
- Fit/predict state handling
- p-value shapes, ranges and label order
- Label-conditional calibration subsets
- Parallel vs sequential equivalence and failure propagation
- Empirical validity
- Persistence round-trips
"""

import gc
import pickle
from concurrent.futures import Executor, Future, ThreadPoolExecutor

import numpy as np
import pytest
import scipy.sparse as sp
from sklearn.exceptions import NotFittedError
from sklearn.linear_model import LogisticRegression
from sklearn.svm import LinearSVC

from transcp import ModelLoadError, load_model, save_model
from transcp.cp import ConformalClassification, TransductiveConformalClassifier
from transcp.cp.parallel import ParallelizedAction, split_range
from transcp.ml import AugmentedTrainingSet, as_native_storage, native_storage_template
from transcp.nc import (
    AttributeAverageNonconformityFunction,
    ClassificationNonconformityFunction,
    HingeLossNonconformityFunction,
    SVMDistanceNonconformityFunction,
)


class RowIndexNonconformityFunction(ClassificationNonconformityFunction):
    """Scores every row by its position; makes calibration subsets visible."""

    name = "row index nonconformity function"

    def _train(self, X, y):
        pass

    def _scores(self, X, y):
        return np.arange(len(y), dtype=float)


class FailingNonconformityFunction(ClassificationNonconformityFunction):
    """Raises when the instance being predicted has first attribute 99."""

    name = "failing nonconformity function"

    def _train(self, X, y):
        pass

    def _scores(self, X, y):
        if np.asarray(X)[-1, 0] == 99:
            raise RuntimeError("boom")
        return np.zeros(len(y))


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=4)
    yield pool
    pool.shutdown(wait=True)


def make_tcc(labels=(0, 1), **kwargs):
    return TransductiveConformalClassifier(
        AttributeAverageNonconformityFunction(labels), labels, **kwargs
    )


# ============================================================================
# Test 1: State Handling
# ============================================================================

def test_predict_before_fit_raises():
    tcc = make_tcc()

    assert not tcc.is_trained
    assert tcc.attribute_count == -1
    with pytest.raises(NotFittedError, match="not trained"):
        tcc.predict_p_values(np.zeros((2, 2)))
    with pytest.raises(NotFittedError):
        tcc.predict(np.zeros(2))


def test_fit_returns_self(binary_data):
    tcc = make_tcc()
    result = tcc.fit(binary_data['X_cal'], binary_data['y_cal'])

    assert result is tcc
    assert tcc.is_trained
    assert tcc.attribute_count == 2


def test_labels_are_sorted():
    tcc = make_tcc(labels=(2, 0, 1))

    np.testing.assert_array_equal(tcc.get_labels(), [0.0, 1.0, 2.0])
    assert tcc.label_index_ == {0.0: 0, 1.0: 1, 2.0: 2}


def test_fit_rejects_unknown_labels(binary_data):
    tcc = make_tcc()
    y = binary_data['y_cal'].copy()
    y[0] = 5

    with pytest.raises(ValueError, match="not in the label set"):
        tcc.fit(binary_data['X_cal'], y)


def test_fit_rejects_length_mismatch(binary_data):
    with pytest.raises(ValueError, match="Length mismatch"):
        make_tcc().fit(binary_data['X_cal'], binary_data['y_cal'][:-1])


def test_label_conditional_warns_on_missing_label(binary_data):
    tcc = make_tcc(labels=(0, 1, 2), label_conditional=True)

    with pytest.warns(UserWarning, match="no calibration rows"):
        tcc.fit(binary_data['X_cal'], binary_data['y_cal'])


def test_predict_rejects_wrong_attribute_count(binary_data):
    tcc = make_tcc().fit(binary_data['X_cal'], binary_data['y_cal'])

    with pytest.raises(ValueError, match="attributes"):
        tcc.predict_p_values(np.zeros((3, 5)))


# ============================================================================
# Test 2: Prediction
# ============================================================================

def test_p_value_matrix_shape_and_range(binary_data):
    tcc = make_tcc().fit(binary_data['X_cal'], binary_data['y_cal'])

    p_values = tcc.predict_p_values(binary_data['X_test'])

    assert p_values.shape == (len(binary_data['y_test']), 2)
    assert (p_values > 0).all()
    assert (p_values <= 1).all()
    # Smallest attainable p-value is 1/(n+1)
    assert p_values.min() >= 1 / (len(binary_data['y_cal']) + 1) - 1e-12


def test_single_instance_matches_batch_row(binary_data):
    tcc = make_tcc(parallel=False).fit(binary_data['X_cal'], binary_data['y_cal'])
    X_test = binary_data['X_test']

    batch = tcc.predict_p_values(X_test)
    for i in range(len(X_test)):
        np.testing.assert_array_equal(tcc.predict_p_values(X_test[i]), batch[i])


def test_predict_returns_index_aligned_results(binary_data, executor):
    tcc = make_tcc(executor=executor, leaf_size=1)
    tcc.fit(binary_data['X_cal'], binary_data['y_cal'])
    X_test = binary_data['X_test']

    results = tcc.predict(X_test)

    assert len(results) == len(X_test)
    for i, result in enumerate(results):
        assert isinstance(result, ConformalClassification)
        np.testing.assert_array_equal(result.p_values, tcc.predict_p_values(X_test[i]))


def test_well_separated_instances_get_confident_predictions(binary_data):
    tcc = make_tcc().fit(binary_data['X_cal'], binary_data['y_cal'])

    results = tcc.predict(np.array([[-1.5, -1.5], [1.5, 1.5]]))

    assert results[0].label == 0.0
    assert results[1].label == 1.0
    assert results[0].p_values[1] < 0.05
    assert results[1].p_values[0] < 0.05


def test_hinge_loss_transductive_prediction(binary_data):
    ncf = HingeLossNonconformityFunction([0, 1], LogisticRegression())
    tcc = TransductiveConformalClassifier(ncf, [0, 1])
    tcc.fit(binary_data['X_cal'], binary_data['y_cal'])

    results = tcc.predict(binary_data['X_test'])
    predicted = np.array([r.label for r in results], dtype=float)

    assert np.mean(predicted == binary_data['y_test']) >= 0.8
    # The base function is never trained by the conformal classifier
    assert not ncf.is_trained


def test_sparse_and_dense_input_agree(binary_data):
    tcc = make_tcc(parallel=False).fit(binary_data['X_cal'], binary_data['y_cal'])
    sparse_tcc = make_tcc(parallel=False).fit(
        sp.csr_matrix(binary_data['X_cal']), binary_data['y_cal']
    )

    np.testing.assert_allclose(
        sparse_tcc.predict_p_values(sp.csr_matrix(binary_data['X_test'])),
        tcc.predict_p_values(binary_data['X_test'])
    )


def test_sparse_native_storage_prediction(binary_data):
    ncf = SVMDistanceNonconformityFunction([0, 1], LinearSVC())
    tcc = TransductiveConformalClassifier(ncf, [0, 1], parallel=False)
    tcc.fit(binary_data['X_cal'], binary_data['y_cal'])

    assert sp.issparse(tcc.X_)
    p_values = tcc.predict_p_values(binary_data['X_test'])
    assert p_values.shape == (len(binary_data['y_test']), 2)
    assert ((p_values > 0) & (p_values <= 1)).all()


def test_results_do_not_keep_classifier_alive(binary_data):
    tcc = make_tcc(parallel=False).fit(binary_data['X_cal'], binary_data['y_cal'])
    result = tcc.predict(binary_data['X_test'][0])

    assert result.source is tcc
    del tcc
    gc.collect()
    assert result.source is None
    assert result.p_values.shape == (2,)


# ============================================================================
# Test 3: Label-Conditional Mode
# ============================================================================

def test_label_conditional_calibration_subset():
    """With labels {0,0,1,1,1} and hypothesis 1 only the three 1-rows are used."""
    X = np.arange(10, dtype=float).reshape(5, 2)
    y = np.array([0, 0, 1, 1, 1], dtype=float)
    tcc = TransductiveConformalClassifier(
        RowIndexNonconformityFunction([0, 1]), [0, 1], label_conditional=True
    ).fit(X, y)

    buffer = AugmentedTrainingSet(tcc.X_, tcc.y_)
    buffer.assign_instance(np.array([100.0, 100.0]))

    test_score, calibration = tcc.calculate_nonconformity_scores(buffer, 1.0)
    assert test_score == 5.0
    np.testing.assert_array_equal(calibration, [2.0, 3.0, 4.0])

    test_score, calibration = tcc.calculate_nonconformity_scores(buffer, 0.0)
    np.testing.assert_array_equal(calibration, [0.0, 1.0])


def test_label_conditional_p_values():
    X = np.arange(10, dtype=float).reshape(5, 2)
    y = np.array([0, 0, 1, 1, 1], dtype=float)
    instance = np.array([100.0, 100.0])

    conditional = TransductiveConformalClassifier(
        RowIndexNonconformityFunction([0, 1]), [0, 1], label_conditional=True
    ).fit(X, y)
    plain = TransductiveConformalClassifier(
        RowIndexNonconformityFunction([0, 1]), [0, 1]
    ).fit(X, y)

    np.testing.assert_allclose(conditional.predict_p_values(instance), [1 / 3, 1 / 4])
    np.testing.assert_allclose(plain.predict_p_values(instance), [1 / 6, 1 / 6])


# ============================================================================
# Test 4: Parallel Execution
# ============================================================================

def test_parallel_matches_sequential(multiclass_data, executor):
    X_cal, y_cal = multiclass_data['X_cal'], multiclass_data['y_cal']
    X_test = multiclass_data['X_test']

    sequential = make_tcc(labels=(0, 1, 2), parallel=False).fit(X_cal, y_cal)
    parallel = make_tcc(labels=(0, 1, 2), executor=executor, leaf_size=2).fit(X_cal, y_cal)

    np.testing.assert_array_equal(
        parallel.predict_p_values(X_test), sequential.predict_p_values(X_test)
    )


def test_parallel_matches_sequential_hinge(binary_data, executor):
    def build(**kwargs):
        ncf = HingeLossNonconformityFunction([0, 1], LogisticRegression())
        return TransductiveConformalClassifier(ncf, [0, 1], **kwargs).fit(
            binary_data['X_cal'], binary_data['y_cal']
        )

    sequential = build(parallel=False).predict_p_values(binary_data['X_test'])
    parallel = build(executor=executor, leaf_size=3).predict_p_values(binary_data['X_test'])

    np.testing.assert_array_equal(parallel, sequential)


@pytest.mark.parametrize("parallel", [True, False])
def test_worker_failure_aborts_batch(parallel, executor):
    X = np.zeros((6, 2))
    y = np.array([0, 1, 0, 1, 0, 1], dtype=float)
    tcc = TransductiveConformalClassifier(
        FailingNonconformityFunction([0, 1]), [0, 1],
        parallel=parallel, executor=executor, leaf_size=1
    ).fit(X, y)

    X_test = np.zeros((8, 2))
    X_test[5, 0] = 99

    with pytest.raises(RuntimeError, match="boom"):
        tcc.predict_p_values(X_test)
    with pytest.raises(RuntimeError, match="boom"):
        tcc.predict(X_test)


def test_split_range_bisects():
    assert split_range(0, 10, 3) == [(0, 2), (2, 5), (5, 7), (7, 10)]
    assert split_range(0, 4, 10) == [(0, 4)]
    assert split_range(3, 3, 2) == []


class RecordingAction(ParallelizedAction):
    def __init__(self, counts, leaves, first, last, executor=None, threshold=None):
        super().__init__(first, last, executor=executor, threshold=threshold)
        self.counts = counts
        self.leaves = leaves
        self.buffer = None

    def initialize(self, first, last):
        self.buffer = []

    def compute(self, i):
        self.buffer.append(i)
        self.counts[i] += 1

    def finalize(self, first, last):
        self.leaves.append(tuple(self.buffer))
        self.buffer = None

    def create_subtask(self, first, last):
        return RecordingAction(self.counts, self.leaves, first, last,
                               self.executor, self.threshold)


def test_parallelized_action_covers_range_once(executor):
    counts = np.zeros(23, dtype=int)
    leaves = []

    RecordingAction(counts, leaves, 0, 23, executor=executor, threshold=4).run()

    np.testing.assert_array_equal(counts, 1)
    assert all(len(leaf) <= 4 for leaf in leaves)
    assert sorted(i for leaf in leaves for i in leaf) == list(range(23))


def test_parallelized_action_sequential():
    counts = np.zeros(5, dtype=int)
    leaves = []

    RecordingAction(counts, leaves, 0, 5).run_sequential()

    np.testing.assert_array_equal(counts, 1)
    assert leaves == [(0, 1, 2, 3, 4)]


class InlineExecutor(Executor):
    """Runs every submitted call immediately on the calling thread."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


def test_parallelized_action_accepts_any_executor():
    counts = np.zeros(37, dtype=int)
    leaves = []

    RecordingAction(counts, leaves, 0, 37, executor=InlineExecutor()).run()

    np.testing.assert_array_equal(counts, 1)
    assert len(leaves) >= 1


# ============================================================================
# Test 5: Validity
# ============================================================================

@pytest.mark.parametrize("label_conditional", [False, True])
@pytest.mark.parametrize("significance", [0.1, 0.2])
def test_empirical_error_rate_is_valid(overlapping_data, label_conditional, significance):
    tcc = make_tcc(label_conditional=label_conditional)
    tcc.fit(overlapping_data['X_cal'], overlapping_data['y_cal'])

    p_values = tcc.predict_p_values(overlapping_data['X_test'])
    y_test = overlapping_data['y_test'].astype(int)
    true_p_values = p_values[np.arange(len(y_test)), y_test]

    # One fixed calibration set, so allow for calibration-conditional spread
    error_rate = np.mean(true_p_values < significance)
    assert error_rate <= significance + 0.1


# ============================================================================
# Test 6: Persistence
# ============================================================================

def test_pickle_round_trip_dense(binary_data):
    ncf = HingeLossNonconformityFunction([0, 1], LogisticRegression())
    tcc = TransductiveConformalClassifier(ncf, [0, 1], label_conditional=True)
    tcc.fit(binary_data['X_cal'], binary_data['y_cal'])
    probe = binary_data['X_test'][0]

    loaded = pickle.loads(pickle.dumps(tcc))

    assert loaded.label_conditional is True
    assert loaded.label_index_ == tcc.label_index_
    np.testing.assert_array_equal(loaded.y_, tcc.y_)
    np.testing.assert_array_equal(loaded.predict_p_values(probe), tcc.predict_p_values(probe))


def test_pickle_restores_native_layout(binary_data):
    tcc = make_tcc().fit(binary_data['X_cal'], binary_data['y_cal'])

    loaded = pickle.loads(pickle.dumps(tcc))

    # Stored as sparse, loaded back into the dense layout the function prefers
    assert isinstance(loaded.X_, np.ndarray)
    np.testing.assert_array_equal(loaded.X_, tcc.X_)


def test_save_and_load_model(binary_data, tmp_path):
    ncf = SVMDistanceNonconformityFunction([0, 1], LinearSVC())
    tcc = TransductiveConformalClassifier(ncf, [0, 1], parallel=False)
    tcc.fit(binary_data['X_cal'], binary_data['y_cal'])
    probe = binary_data['X_test'][:3]

    path = tmp_path / "models" / "tcc.pkl"
    save_model(tcc, path)
    loaded = load_model(path)

    assert isinstance(loaded, TransductiveConformalClassifier)
    assert sp.issparse(loaded.X_)
    np.testing.assert_array_equal(loaded.predict_p_values(probe), tcc.predict_p_values(probe))


def test_load_corrupt_model_raises(tmp_path):
    path = tmp_path / "corrupt.pkl"
    path.write_bytes(b"definitely not a pickle")

    with pytest.raises(ModelLoadError) as excinfo:
        load_model(path)

    assert excinfo.value.__cause__ is not None
    assert isinstance(excinfo.value, OSError)


def test_load_foreign_object_raises(tmp_path):
    path = tmp_path / "foreign.pkl"
    with open(path, 'wb') as f:
        pickle.dump({'not': 'a model'}, f)

    with pytest.raises(ModelLoadError, match="not a conformal classifier"):
        load_model(path)


def test_load_missing_model_raises(tmp_path):
    with pytest.raises(ModelLoadError) as excinfo:
        load_model(tmp_path / "missing.pkl")

    assert isinstance(excinfo.value.__cause__, FileNotFoundError)


# ============================================================================
# Test 7: Augmented Training Set
# ============================================================================

@pytest.mark.parametrize("sparse", [False, True])
def test_augmented_set_reuses_buffer(binary_data, sparse):
    X, y = binary_data['X_cal'], binary_data['y_cal']
    template = native_storage_template(LogisticRegression() if sparse else None)
    X_native = as_native_storage(template, X)
    buffer = AugmentedTrainingSet(X_native, y)

    first = buffer.X
    buffer.assign_instance(np.array([1.0, 0.0]))
    second = buffer.X
    buffer.assign_instance(sp.csr_matrix([[0.0, 2.5]]))

    assert first is second is buffer.X
    assert sp.issparse(buffer.X) == sparse
    rows = buffer.X.toarray() if sparse else buffer.X
    np.testing.assert_array_equal(rows[:-1], X)
    np.testing.assert_array_equal(rows[-1], [0.0, 2.5])


def test_sparse_augmented_set_keeps_structure(binary_data):
    X = sp.csr_matrix(binary_data['X_cal'])
    buffer = AugmentedTrainingSet(X, binary_data['y_cal'])
    nnz = buffer.X.nnz

    for x in binary_data['X_test'][:4]:
        buffer.assign_instance(x)
        assert buffer.X.nnz == nnz
        np.testing.assert_array_equal(buffer.X[buffer.last].toarray().ravel(), x)
