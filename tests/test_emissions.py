"""
Tests for hohmm.core.emissions: discrete and Gaussian emissions, Dirichlet helpers.
"""
import pytest
import numpy as np
from scipy import stats

from hohmm.core.emissions import (
    DiscreteEmission,
    GaussianEmission,
    dirichlet_gamma_score,
    normalize_log,
)
from hohmm.core.errors import (
    InvalidLengthError,
    StatisticNotResetError,
    UnsupportedStrandError,
)
from hohmm.core.sequence import Sequence


class TestDirichletHelpers:

    def test_normalize_log_rows(self):
        log_p = normalize_log(np.array([[1.0, 3.0], [0.0, 0.0]]))
        np.testing.assert_allclose(np.exp(log_p), [[0.25, 0.75], [0.5, 0.5]])

    def test_gamma_score_closed_form(self):
        """log B(3, 2) - log B(1, 1) = log(1/12)."""
        score = dirichlet_gamma_score(np.array([2.0, 1.0]), np.array([1.0, 1.0]))
        assert score == pytest.approx(np.log(1.0 / 12.0))

    def test_gamma_score_without_prior(self):
        assert dirichlet_gamma_score(np.array([5.0, 1.0]), np.zeros(2)) == 0.0


class TestDiscreteEmission:

    @pytest.mark.parametrize("order", [0, 1, 2])
    def test_estimate_normalizes(self, order):
        """Every context row sums to 1 after estimation."""
        emission = DiscreteEmission(4, order=order, ess=2.0)
        seq = Sequence([0, 1, 2, 3, 3, 2, 1, 0, 0, 0, 1])
        emission.add_to_statistic(True, 0, len(seq) - 1, 1.5, seq)
        emission.estimate_from_statistic()
        np.testing.assert_allclose(emission.probs.sum(axis=1), 1.0, atol=1e-9)

    def test_reset_then_estimate_reproduces_prior(self):
        emission = DiscreteEmission(4, hyperparameters=[1.0, 2.0, 3.0, 4.0])
        seq = Sequence([0, 0, 0])
        emission.add_to_statistic(True, 0, 2, 1.0, seq)
        emission.reset_statistic()
        emission.estimate_from_statistic()
        np.testing.assert_allclose(emission.probs[0], [0.1, 0.2, 0.3, 0.4])

    def test_no_prior_no_evidence_is_uniform(self):
        emission = DiscreteEmission(4, probs=[0.7, 0.1, 0.1, 0.1])
        emission.estimate_from_statistic()
        np.testing.assert_allclose(emission.probs[0], 0.25)

    def test_estimate_twice_requires_reset(self):
        emission = DiscreteEmission(2)
        emission.estimate_from_statistic()
        with pytest.raises(StatisticNotResetError):
            emission.estimate_from_statistic()
        emission.reset_statistic()
        emission.estimate_from_statistic()

    def test_draw_consumes_statistic(self):
        emission = DiscreteEmission(2, ess=1.0)
        emission.draw_parameters_from_statistic(np.random.default_rng(0))
        with pytest.raises(StatisticNotResetError):
            emission.estimate_from_statistic()

    def test_span_score_is_sum_of_positions(self):
        emission = DiscreteEmission(4, probs=[0.1, 0.2, 0.3, 0.4])
        seq = Sequence([3, 0, 2])
        expected = np.log(0.4) + np.log(0.1) + np.log(0.3)
        assert emission.get_log_prob_for(True, 0, 2, seq) == pytest.approx(expected)

    def test_empty_span_scores_zero(self):
        emission = DiscreteEmission(4)
        seq = Sequence([1, 2, 3])
        assert emission.get_log_prob_for(True, 2, 1, seq) == 0.0

    @pytest.mark.parametrize("start,end", [(-1, 0), (0, 3), (2, 0)])
    def test_invalid_span(self, start, end):
        emission = DiscreteEmission(4)
        with pytest.raises(InvalidLengthError):
            emission.get_log_prob_for(True, start, end, Sequence([1, 2, 3]))

    def test_conditional_order(self):
        emission = DiscreteEmission(2, order=1, probs=[[0.9, 0.1], [0.3, 0.7]])
        seq = Sequence([0, 0, 1, 1])
        scores = emission.get_log_scores(True, 0, 3, seq)
        np.testing.assert_allclose(scores, np.log([0.5, 0.9, 0.1, 0.7]))

    def test_conditional_statistic_skips_first_positions(self):
        emission = DiscreteEmission(2, order=1)
        seq = Sequence([0, 0, 1, 1])
        emission.add_to_statistic(True, 0, 3, 1.0, seq)
        np.testing.assert_allclose(emission.statistic, [[1.0, 1.0], [0.0, 1.0]])

    def test_reverse_strand_scores_complement(self):
        """Position 0 of AACG pairs with the last base of its reverse complement (T)."""
        emission = DiscreteEmission(4, probs=[0.1, 0.2, 0.3, 0.4])
        seq = Sequence.from_string('AACG')
        assert emission.get_log_prob_for(False, 0, 0, seq) == pytest.approx(np.log(0.4))
        assert emission.get_log_prob_for(False, 3, 3, seq) == pytest.approx(np.log(0.2))

    def test_reverse_strand_needs_complement(self):
        emission = DiscreteEmission(4)
        with pytest.raises(UnsupportedStrandError):
            emission.get_log_prob_for(False, 0, 0, Sequence([0, 1]))

    def test_unknown_symbols_are_neutral(self):
        emission = DiscreteEmission(4, probs=[0.1, 0.2, 0.3, 0.4])
        seq = Sequence.from_string('ANA')
        scores = emission.get_log_scores(True, 0, 2, seq)
        np.testing.assert_allclose(scores, [np.log(0.1), 0.0, np.log(0.1)])
        emission.add_to_statistic(True, 0, 2, 1.0, seq)
        np.testing.assert_allclose(emission.statistic[0], [2.0, 0.0, 0.0, 0.0])

    def test_negative_weight_rejected(self):
        emission = DiscreteEmission(2)
        with pytest.raises(ValueError):
            emission.add_to_statistic(True, 0, 0, -1.0, Sequence([0]))

    def test_join_statistics(self):
        a = DiscreteEmission(2)
        b = DiscreteEmission(2)
        seq = Sequence([0, 1, 1])
        a.add_to_statistic(True, 0, 0, 1.0, seq)
        b.add_to_statistic(True, 1, 2, 2.0, seq)
        a.join_statistics(b)
        np.testing.assert_allclose(a.statistic, [[1.0, 4.0]])

    def test_importance_weight_equal_statistic_is_gamma_score(self):
        emission = DiscreteEmission(3, ess=3.0)
        seq = Sequence([0, 1, 1, 2])
        emission.add_to_statistic(True, 0, 3, 1.0, seq)
        other = DiscreteEmission(3, ess=3.0)
        other.join_statistics(emission)
        assert emission.get_log_importance_weight(other) == emission.get_log_gamma_score_from_statistic()

    def test_proposal_posterior_is_normalized_dirichlet(self):
        emission = DiscreteEmission(3, hyperparameters=[1.0, 2.0, 1.5],
                                    probs=[0.2, 0.5, 0.3])
        emission.add_to_statistic(True, 0, 3, 1.0, Sequence([0, 1, 1, 2]))
        expected = stats.dirichlet.logpdf([0.2, 0.5, 0.3], [2.0, 4.0, 2.5])
        assert emission.get_log_proposal_posterior_from_statistic() == pytest.approx(expected)

    def test_dict_round_trip(self):
        emission = DiscreteEmission(2, order=1, ess=2.0, probs=[[0.9, 0.1], [0.3, 0.7]])
        restored = DiscreteEmission.from_dict(emission.to_dict())
        np.testing.assert_allclose(restored.probs, emission.probs)
        np.testing.assert_allclose(restored.hyperparameters, emission.hyperparameters)
        assert restored.order == 1


class TestGaussianEmission:

    def test_scores_match_normal_density(self):
        emission = GaussianEmission(mean=1.0, precision=4.0)
        seq = Sequence([0.5, 1.0, 2.0])
        expected = stats.norm.logpdf([0.5, 1.0, 2.0], loc=1.0, scale=0.5)
        np.testing.assert_allclose(emission.get_log_scores(True, 0, 2, seq), expected)

    def test_reverse_strand_unsupported(self):
        emission = GaussianEmission()
        with pytest.raises(UnsupportedStrandError):
            emission.get_log_prob_for(False, 0, 0, Sequence([0.0]))

    def test_maximum_likelihood_without_prior(self):
        emission = GaussianEmission()
        seq = Sequence([1.0, 2.0, 3.0, 4.0])
        emission.add_to_statistic(True, 0, 3, 1.0, seq)
        emission.estimate_from_statistic()
        assert emission.mean == pytest.approx(2.5)
        assert emission.precision == pytest.approx(1.0 / 1.25)

    def test_posterior_mean(self):
        emission = GaussianEmission(prior_mean=0.0, ess=2.0, shape=2.0, rate=1.0)
        emission.add_to_statistic(True, 0, 1, 1.0, Sequence([3.0, 5.0]))
        emission.estimate_from_statistic()
        assert emission.mean == pytest.approx(8.0 / 4.0)

    def test_reset_then_estimate_reproduces_prior(self):
        emission = GaussianEmission(mean=5.0, prior_mean=1.0, ess=2.0, shape=3.0, rate=2.0)
        emission.estimate_from_statistic()
        assert emission.mean == pytest.approx(1.0)
        assert emission.precision == pytest.approx(2.5 / 2.0)

    def test_proposal_posterior_is_normal_gamma_density(self):
        """posterior - gamma score is the normalised Normal-Gamma posterior density."""
        emission = GaussianEmission(mean=0.7, precision=1.3, prior_mean=0.5,
                                    ess=2.0, shape=3.0, rate=2.0)
        data = np.array([0.2, 1.1, 0.8, -0.3])
        emission.add_to_statistic(True, 0, 3, 1.0, Sequence(data))

        kappa_n = 2.0 + 4
        mu_n = (2.0 * 0.5 + data.sum()) / kappa_n
        alpha_n = 3.0 + 2.0
        beta_n = 2.0 + 0.5 * ((data - data.mean()) ** 2).sum() \
            + 2.0 * 4 * (data.mean() - 0.5) ** 2 / (2 * kappa_n)
        expected = (stats.gamma.logpdf(1.3, a=alpha_n, scale=1.0 / beta_n)
                    + stats.norm.logpdf(0.7, loc=mu_n, scale=1.0 / np.sqrt(kappa_n * 1.3)))
        assert emission.get_log_proposal_posterior_from_statistic() == pytest.approx(expected)

    def test_sampling_requires_prior(self):
        emission = GaussianEmission()
        with pytest.raises(ValueError):
            emission.draw_parameters_from_statistic(np.random.default_rng(0))

    def test_weighted_statistic(self):
        emission = GaussianEmission()
        emission.add_weights_to_statistic(True, 0, [0.5, 0.5], Sequence([2.0, 4.0]))
        assert emission.n == pytest.approx(1.0)
        assert emission.sum_x == pytest.approx(3.0)
        assert emission.sum_x2 == pytest.approx(10.0)
