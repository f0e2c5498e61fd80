"""
End-to-end tests for the hohmm-train and hohmm-decode entry points.
"""
import pytest
import json
import os

import pandas as pd

from hohmm.cli import decode, train
from hohmm.core.model_io import load_model, load_model_with_metadata, save_model


@pytest.fixture
def model_file(two_state_model, tmp_path):
    return save_model(two_state_model, str(tmp_path / "model.json"))


@pytest.fixture
def sequence_file(discrete_sequences, tmp_path):
    path = tmp_path / "seqs.tsv"
    rows = ["sequence\tname"]
    for seq in discrete_sequences:
        rows.append(' '.join(str(v) for v in seq.values) + f"\t{seq.name}")
    path.write_text('\n'.join(rows) + '\n')
    return str(path)


class TestTrainCommand:

    def test_baum_welch(self, model_file, sequence_file, tmp_path):
        out = str(tmp_path / "out")
        train.main(['-m', model_file, '-i', sequence_file, '-o', out,
                    '--max-iter', '3', '--restarts', '2'])
        model, metadata = load_model_with_metadata(os.path.join(out, 'best-model.json'))
        assert metadata['method'] == 'baum-welch'
        assert metadata['n_sequences'] == 6
        history = pd.read_csv(os.path.join(out, 'training-history.tsv'), sep='\t')
        assert len(history) == 2
        with open(os.path.join(out, 'training_config.json')) as f:
            config = json.load(f)
        assert config['final_score'] == pytest.approx(history['objective'].max())

    def test_viterbi_from_stored_parameters(self, model_file, sequence_file, tmp_path):
        out = str(tmp_path / "out")
        train.main(['-m', model_file, '-i', sequence_file, '-o', out,
                    '--method', 'viterbi', '--max-iter', '2', '--no-randomize'])
        assert os.path.exists(os.path.join(out, 'best-model.json'))

    def test_metropolis_hastings(self, model_file, sequence_file, tmp_path):
        out = str(tmp_path / "out")
        train.main(['-m', model_file, '-i', sequence_file, '-o', out,
                    '--method', 'metropolis-hastings', '--burn-in', '1', '--samples', '2'])
        history = pd.read_csv(os.path.join(out, 'training-history.tsv'), sep='\t')
        assert list(history.columns) == ['chain', 'round', 'log_likelihood', 'attempts']
        assert history['attempts'].tolist() == [1, 1, 1]

    def test_metropolis_hastings_chains(self, model_file, sequence_file, tmp_path):
        out = str(tmp_path / "out")
        train.main(['-m', model_file, '-i', sequence_file, '-o', out,
                    '--method', 'metropolis-hastings', '--burn-in', '4', '--samples', '2',
                    '--chains', '2', '--burn-in-threshold', '1.5'])
        history = pd.read_csv(os.path.join(out, 'training-history.tsv'), sep='\t')
        assert sorted(history['chain'].unique()) == [0, 1]
        counts = history.groupby('chain').size().tolist()
        assert counts[0] == counts[1]
        assert 3 <= counts[0] <= 6
        with open(os.path.join(out, 'training_config.json')) as f:
            assert json.load(f)['chains'] == 2


class TestDecodeCommand:

    def test_decode(self, model_file, sequence_file, tmp_path):
        out = str(tmp_path / "decoded.tsv")
        decode.main(['-m', model_file, '-i', sequence_file, '-o', out])
        df = pd.read_csv(out, sep='\t')
        model = load_model(model_file)
        assert df['name'].tolist() == [f"seq{i}" for i in range(6)]
        assert (df['viterbi_score'] <= df['log_likelihood'] + 1e-9).all()
        for path in df['path']:
            names = path.split(',')
            assert len(names) == 16
            assert set(names) <= {s.name for s in model.states}


class TestPhyloCommands:

    @pytest.fixture
    def phylo_files(self, phylo_model, tmp_path):
        model_path = save_model(phylo_model, str(tmp_path / "phylo.json"))
        aln_path = tmp_path / "aln.tsv"
        aln_path.write_text("name\thuman\tmouse\nchr1\tACGTTA\tACGATA\nchr2\tGGCA\tGGCT\n")
        return model_path, str(aln_path)

    def test_train(self, phylo_files, tmp_path):
        model_path, aln_path = phylo_files
        out = str(tmp_path / "out")
        train.main(['-m', model_path, '-i', aln_path, '-o', out, '--max-iter', '2'])
        model, metadata = load_model_with_metadata(os.path.join(out, 'best-model.json'))
        assert metadata['n_sequences'] == 2
        assert model.emissions[0].probs.sum() == pytest.approx(1.0)

    def test_decode(self, phylo_files, tmp_path):
        model_path, aln_path = phylo_files
        out = str(tmp_path / "decoded.tsv")
        decode.main(['-m', model_path, '-i', aln_path, '-o', out])
        df = pd.read_csv(out, sep='\t')
        assert df['name'].tolist() == ['chr1', 'chr2']
        assert [len(p.split(',')) for p in df['path']] == [6, 4]
