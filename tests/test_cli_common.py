"""
Tests for hohmm.cli.common argument factories and input readers.
"""
import pytest
import argparse
import numpy as np

from hohmm.cli.common import (
    METHODS,
    add_method_args,
    add_model_args,
    add_output_args,
    add_parallel_args,
    add_sampler_args,
    add_seed_args,
    add_training_args,
    add_verbose_args,
    is_continuous,
    is_phylo,
    read_alignments,
    read_model_inputs,
    read_sequences,
)


class TestAddModelArgs:
    def test_required(self):
        parser = argparse.ArgumentParser()
        add_model_args(parser)
        with pytest.raises(SystemExit):
            parser.parse_args([])

    def test_short_flags(self):
        parser = argparse.ArgumentParser()
        add_model_args(parser)
        args = parser.parse_args(['-m', 'model.json', '-i', 'seqs.tsv'])
        assert args.model == 'model.json'
        assert args.input == 'seqs.tsv'


class TestAddMethodArgs:
    def test_default_method(self):
        parser = argparse.ArgumentParser()
        add_method_args(parser)
        assert parser.parse_args([]).method == 'baum-welch'

    def test_valid_choices(self):
        parser = argparse.ArgumentParser()
        add_method_args(parser)
        for method in METHODS:
            assert parser.parse_args(['--method', method]).method == method

    def test_invalid_choice(self):
        parser = argparse.ArgumentParser()
        add_method_args(parser)
        with pytest.raises(SystemExit):
            parser.parse_args(['--method', 'gibbs'])


class TestAddTrainingArgs:
    def test_defaults(self):
        parser = argparse.ArgumentParser()
        add_training_args(parser)
        args = parser.parse_args([])
        assert args.max_iter == 100
        assert args.tol == pytest.approx(1e-4)
        assert args.restarts == 1

    def test_custom_defaults(self):
        parser = argparse.ArgumentParser()
        add_training_args(parser, n_iter=10, n_starts=4)
        args = parser.parse_args([])
        assert args.max_iter == 10
        assert args.restarts == 4


class TestAddSamplerArgs:
    def test_defaults(self):
        parser = argparse.ArgumentParser()
        add_sampler_args(parser)
        args = parser.parse_args([])
        assert args.burn_in == 100
        assert args.samples == 100
        assert args.max_retries == 100
        assert args.proposal_temperature == 1.0
        assert args.chains == 1
        assert args.burn_in_threshold is None

    def test_override(self):
        parser = argparse.ArgumentParser()
        add_sampler_args(parser)
        args = parser.parse_args(['--max-retries', '7', '--proposal-temperature', '2.5'])
        assert args.max_retries == 7
        assert args.proposal_temperature == 2.5


class TestMiscArgs:
    def test_parallel_short_flag(self):
        parser = argparse.ArgumentParser()
        add_parallel_args(parser)
        assert parser.parse_args(['-c', '4']).cores == 4

    def test_seed_default(self):
        parser = argparse.ArgumentParser()
        add_seed_args(parser)
        assert parser.parse_args([]).seed == 42

    def test_output_optional(self):
        parser = argparse.ArgumentParser()
        add_output_args(parser, required=False)
        assert parser.parse_args([]).output is None

    def test_verbose(self):
        parser = argparse.ArgumentParser()
        add_verbose_args(parser)
        assert parser.parse_args(['-v']).verbose is True
        assert parser.parse_args([]).verbose is False


class TestReadSequences:
    def test_discrete(self, tmp_path):
        path = tmp_path / "seqs.tsv"
        path.write_text("sequence\tname\tweight\n0 1 2\tfirst\t2.0\n3 3\tsecond\t0.5\n")
        sequences, weights = read_sequences(str(path))
        assert [s.name for s in sequences] == ['first', 'second']
        np.testing.assert_array_equal(sequences[0].values, [0, 1, 2])
        assert sequences[0].is_discrete
        assert weights == [2.0, 0.5]

    def test_defaults_for_optional_columns(self, tmp_path):
        path = tmp_path / "seqs.tsv"
        path.write_text("sequence\n1 0\n0\n")
        sequences, weights = read_sequences(str(path))
        assert [s.name for s in sequences] == ['seq0', 'seq1']
        assert weights == [1.0, 1.0]

    def test_continuous(self, tmp_path):
        path = tmp_path / "seqs.tsv"
        path.write_text("sequence\n-1.5 0.25 3\n")
        sequences, _ = read_sequences(str(path), continuous=True)
        np.testing.assert_allclose(sequences[0].values, [-1.5, 0.25, 3.0])
        assert not sequences[0].is_discrete

    def test_missing_column(self, tmp_path):
        path = tmp_path / "seqs.tsv"
        path.write_text("symbols\n0 1\n")
        with pytest.raises(ValueError):
            read_sequences(str(path))

    def test_is_continuous(self, gaussian_model, two_state_model):
        assert is_continuous(gaussian_model)
        assert not is_continuous(two_state_model)


class TestReadAlignments:
    def test_taxon_columns(self, tmp_path):
        path = tmp_path / "aln.tsv"
        path.write_text("name\thuman\tmouse\tweight\nfirst\tACGT\tACGA\t2.0\n")
        alignments, weights = read_alignments(str(path))
        assert alignments[0].taxa == ['human', 'mouse']
        assert alignments[0].name == 'first'
        np.testing.assert_array_equal(alignments[0].values[:, 1], [0, 1, 2, 0])
        assert weights == [2.0]

    def test_empty_cell_drops_taxon(self, tmp_path):
        path = tmp_path / "aln.tsv"
        path.write_text("human\tmouse\nAC\t\n")
        alignments, weights = read_alignments(str(path))
        assert alignments[0].taxa == ['human']
        assert alignments[0].name == 'aln0'
        assert weights == [1.0]

    def test_unequal_lengths(self, tmp_path):
        path = tmp_path / "aln.tsv"
        path.write_text("human\tmouse\nACG\tAC\n")
        with pytest.raises(ValueError):
            read_alignments(str(path))

    def test_dispatch_on_model(self, tmp_path, phylo_model, two_state_model):
        path = tmp_path / "aln.tsv"
        path.write_text("human\tmouse\nAC\tAC\n")
        assert is_phylo(phylo_model)
        assert not is_phylo(two_state_model)
        alignments, _ = read_model_inputs(str(path), phylo_model)
        assert alignments[0].values.shape == (2, 2)
