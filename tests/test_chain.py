"""Tests for MCMCChain, posterior summaries and draw persistence."""

import numpy as np
import pandas as pd
import pytest

from spikeinfer import EmptyChain, MCMCChain
from spikeinfer.core.serialization import (
    PERSISTED_BLOCKS,
    ChainWriter,
    chain_file,
    read_persisted_draws,
)
from spikeinfer.stats import hpd_interval, shorth_mode

# ------------------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------------------


@pytest.fixture
def random_chain(make_chain):
    """200 draws of awkward floats for 3 genes and 3 cells."""
    rng = np.random.default_rng(3)
    n = 200
    return make_chain(
        mu=rng.lognormal(3.0, 0.5, size=(n, 3)),
        delta=rng.lognormal(-1.0, 0.3, size=(n, 3)),
        phi=rng.gamma(5.0, 0.2, size=(n, 3)),
        s=rng.gamma(2.0, 0.5, size=(n, 3)),
        nu=np.pi * rng.random(size=(n, 3)) + 1e-12,
        theta=rng.gamma(4.0, 0.1, size=(n, 1)),
        genes=["Actb", "Gapdh", "Sox2"],
    )


# ------------------------------------------------------------------------------
# HPD and mode
# ------------------------------------------------------------------------------


class TestHPD:
    def test_uniform_grid(self):
        lower, upper = hpd_interval(np.arange(100), 0.95)
        assert (lower[0], upper[0]) == (0.0, 94.0)

    def test_outlier_is_excluded(self):
        lower, upper = hpd_interval([0.0, 1.0, 2.0, 3.0, 100.0], 0.6)
        assert (lower[0], upper[0]) == (0.0, 2.0)

    def test_order_does_not_matter(self):
        lower, upper = hpd_interval([100.0, 2.0, 0.0, 3.0, 1.0], 0.6)
        assert (lower[0], upper[0]) == (0.0, 2.0)

    def test_columns_are_independent(self):
        draws = np.column_stack([np.arange(100), np.arange(100) * 2.0])
        lower, upper = hpd_interval(draws, 0.95)
        np.testing.assert_array_equal(lower, [0.0, 0.0])
        np.testing.assert_array_equal(upper, [94.0, 188.0])

    def test_full_mass(self):
        lower, upper = hpd_interval([3.0, 1.0, 2.0], 1.0)
        assert (lower[0], upper[0]) == (1.0, 3.0)

    def test_single_draw(self):
        lower, upper = hpd_interval([7.0])
        assert lower[0] == upper[0] == 7.0

    @pytest.mark.parametrize("prob", [0.0, -0.5, 1.5])
    def test_invalid_prob(self, prob):
        with pytest.raises(ValueError):
            hpd_interval(np.arange(10), prob)

    def test_no_draws(self):
        with pytest.raises(ValueError):
            hpd_interval(np.empty((0, 2)))

    def test_covers_normal_mass(self):
        draws = np.random.default_rng(0).normal(size=20000)
        lower, upper = hpd_interval(draws, 0.95)
        np.testing.assert_allclose(
            [lower[0], upper[0]], [-1.96, 1.96], atol=0.1
        )


class TestMode:
    def test_shortest_window_midpoint(self):
        assert shorth_mode([1.0, 2.0, 2.1, 2.2, 10.0])[0] == pytest.approx(2.1)

    def test_single_draw(self):
        assert shorth_mode([4.0])[0] == 4.0

    def test_skewed_draws(self):
        draws = np.random.default_rng(1).gamma(3.0, 1.0, size=50000)
        # Mode of Gamma(3, 1) is 2
        assert shorth_mode(draws)[0] == pytest.approx(2.0, abs=0.3)


# ------------------------------------------------------------------------------
# Summaries
# ------------------------------------------------------------------------------


class TestSummarize:
    def test_columns_and_index(self, random_chain):
        summary = random_chain.summarize("mu")
        assert list(summary.columns) == [
            "mean",
            "median",
            "mode",
            "hpd_lower",
            "hpd_upper",
        ]
        assert list(summary.index) == ["Actb", "Gapdh", "Sox2"]
        assert summary.index.name == "mu"

    def test_values(self, random_chain):
        summary = random_chain.summarize("delta", prob=0.9)
        draws = random_chain["delta"]
        np.testing.assert_allclose(summary["mean"], draws.mean(axis=0))
        np.testing.assert_allclose(summary["median"], np.median(draws, axis=0))
        assert np.all(summary["hpd_lower"] <= summary["median"])
        assert np.all(summary["median"] <= summary["hpd_upper"])
        assert np.all(summary["hpd_lower"] <= summary["mode"])
        assert np.all(summary["mode"] <= summary["hpd_upper"])

    def test_every_block(self, random_chain):
        summaries = random_chain.summary()
        assert set(summaries) == set(PERSISTED_BLOCKS)
        assert list(summaries["theta"].index) == ["1"]
        assert list(summaries["nu"].index) == ["c0", "c1", "c2"]

    def test_unknown_parameter(self, random_chain):
        with pytest.raises(KeyError):
            random_chain.summarize("rho")

    def test_empty_chain(self, make_chain):
        chain = make_chain(mu=np.empty((0, 2)), delta=np.empty((0, 2)))
        assert chain.n_draws == 0
        with pytest.raises(EmptyChain):
            chain.summarize("mu")
        with pytest.raises(EmptyChain):
            chain.posterior_means()

    def test_empty_chain_is_value_error(self, make_chain):
        chain = make_chain(mu=np.empty((0, 2)), delta=np.empty((0, 2)))
        with pytest.raises(ValueError):
            chain.summarize("delta")


# ------------------------------------------------------------------------------
# Chain container
# ------------------------------------------------------------------------------


class TestMCMCChain:
    def test_dtype_and_length(self, make_chain):
        chain = make_chain(
            mu=np.ones((4, 2), dtype=np.float32), delta=np.ones((4, 2))
        )
        assert chain["mu"].dtype == np.float64
        assert len(chain) == chain.n_draws == 4

    def test_missing_block(self, random_chain):
        params = dict(random_chain.parameters)
        del params["theta"]
        with pytest.raises(KeyError):
            MCMCChain(parameters=params, entity_names=random_chain.entity_names)

    def test_name_mismatch(self, random_chain):
        names = dict(random_chain.entity_names)
        names["mu"] = ["Actb"]
        with pytest.raises(ValueError):
            MCMCChain(parameters=random_chain.parameters, entity_names=names)

    def test_draw_count_mismatch(self, random_chain):
        params = dict(random_chain.parameters)
        params["nu"] = params["nu"][:10]
        with pytest.raises(ValueError):
            MCMCChain(parameters=params, entity_names=random_chain.entity_names)

    def test_caller_names_not_mutated(self, random_chain):
        names = {k: tuple(v) for k, v in random_chain.entity_names.items()}
        chain = MCMCChain(
            parameters=random_chain.parameters, entity_names=names
        )
        assert isinstance(names["mu"], tuple)
        assert chain.entity_names["mu"] == ["Actb", "Gapdh", "Sox2"]

    def test_to_dataframe(self, random_chain):
        df = random_chain.to_dataframe("phi")
        assert isinstance(df, pd.DataFrame)
        assert df.shape == (200, 3)
        assert list(df.columns) == ["c0", "c1", "c2"]

    def test_posterior_means(self, random_chain):
        means = random_chain.posterior_means()
        np.testing.assert_allclose(means["s"], random_chain["s"].mean(axis=0))

    def test_effective_sample_size(self, random_chain):
        ess = random_chain.effective_sample_size("mu")
        assert list(ess.index) == ["Actb", "Gapdh", "Sox2"]
        # Independent draws give an ESS of the order of the chain length
        assert np.all(ess > 100)

    def test_effective_sample_size_needs_two_draws(self, make_chain):
        chain = make_chain(mu=[[1.0, 2.0]], delta=[[0.1, 0.2]])
        with pytest.raises(EmptyChain):
            chain.effective_sample_size("mu")

    def test_repr(self, random_chain):
        assert "n_draws=200" in repr(random_chain)


# ------------------------------------------------------------------------------
# Persistence
# ------------------------------------------------------------------------------


class TestPersistence:
    def test_round_trip_is_exact(self, random_chain, tmp_path):
        random_chain.to_persisted_draws(tmp_path, "exact")
        loaded = MCMCChain.from_persisted_draws(tmp_path, "exact")
        assert loaded.run_name == "exact"
        assert loaded.entity_names == random_chain.entity_names
        for block in PERSISTED_BLOCKS:
            np.testing.assert_array_equal(
                loaded[block], random_chain[block]
            )

    def test_summaries_identical_after_reload(self, random_chain, tmp_path):
        random_chain.to_persisted_draws(tmp_path)
        loaded = MCMCChain.from_persisted_draws(tmp_path)
        for block in PERSISTED_BLOCKS:
            pd.testing.assert_frame_equal(
                loaded.summarize(block),
                random_chain.summarize(block),
                check_exact=True,
            )

    def test_reloaded_draws_are_c_contiguous(self, random_chain, tmp_path):
        random_chain.to_persisted_draws(tmp_path)
        draws, _ = read_persisted_draws(tmp_path, "run")
        loaded = MCMCChain.from_persisted_draws(tmp_path)
        for block in PERSISTED_BLOCKS:
            assert draws[block].flags["C_CONTIGUOUS"]
            assert loaded[block].flags["C_CONTIGUOUS"]
            np.testing.assert_array_equal(
                loaded[block].mean(axis=0), random_chain[block].mean(axis=0)
            )

    def test_fortran_input_is_normalized(self, random_chain):
        params = {
            b: np.asfortranarray(random_chain[b]) for b in PERSISTED_BLOCKS
        }
        chain = MCMCChain(
            parameters=params, entity_names=random_chain.entity_names
        )
        for block in PERSISTED_BLOCKS:
            assert chain[block].flags["C_CONTIGUOUS"]
        pd.testing.assert_frame_equal(
            chain.summarize("nu"), random_chain.summarize("nu"),
            check_exact=True,
        )

    def test_file_layout(self, random_chain, tmp_path):
        random_chain.to_persisted_draws(tmp_path, "layout")
        for block in PERSISTED_BLOCKS:
            assert chain_file(tmp_path, block, "layout").exists()
        header = chain_file(tmp_path, "mu", "layout").read_text().splitlines()
        assert header[0] == "Actb,Gapdh,Sox2"
        assert len(header) == 201

    def test_empty_chain_round_trip(self, make_chain, tmp_path):
        chain = make_chain(mu=np.empty((0, 2)), delta=np.empty((0, 2)))
        chain.to_persisted_draws(tmp_path)
        loaded = MCMCChain.from_persisted_draws(tmp_path)
        assert loaded.n_draws == 0
        assert loaded["mu"].shape == (0, 2)

    def test_missing_file(self, random_chain, tmp_path):
        random_chain.to_persisted_draws(tmp_path)
        chain_file(tmp_path, "nu", "run").unlink()
        with pytest.raises(FileNotFoundError):
            read_persisted_draws(tmp_path, "run")

    def test_unknown_run(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            MCMCChain.from_persisted_draws(tmp_path, "nothing")


class TestChainWriter:
    names = {
        "mu": ["g0"],
        "delta": ["g0"],
        "phi": ["c0", "c1"],
        "s": ["c0", "c1"],
        "nu": ["c0", "c1"],
        "theta": ["1"],
    }

    def _draw(self, value):
        return {
            block: np.full(len(cols), value)
            for block, cols in self.names.items()
        }

    def test_streaming(self, tmp_path):
        with ChainWriter(tmp_path / "out", "stream", self.names) as writer:
            writer.write(self._draw(0.1))
            writer.write(self._draw(1.0 / 3.0))
            assert writer.n_written == 2
        draws, names = read_persisted_draws(tmp_path / "out", "stream")
        assert names == self.names
        np.testing.assert_array_equal(
            draws["phi"], [[0.1, 0.1], [1 / 3, 1 / 3]]
        )

    def test_closed_writer(self, tmp_path):
        writer = ChainWriter(tmp_path, "closed", self.names)
        writer.close()
        writer.close()
        with pytest.raises(ValueError):
            writer.write(self._draw(1.0))

    def test_wrong_width(self, tmp_path):
        draw = self._draw(1.0)
        draw["nu"] = np.ones(3)
        with ChainWriter(tmp_path, "wide", self.names) as writer:
            with pytest.raises(ValueError):
                writer.write(draw)

    def test_missing_names(self, tmp_path):
        names = dict(self.names)
        del names["s"]
        with pytest.raises(KeyError):
            ChainWriter(tmp_path, "bad", names)
