"""Tests for slice assignment and the parallel potential computation."""

import threading
from unittest import mock

import chex
import jax
import jax.numpy as jnp
import numpy as np
from absl.testing import parameterized

jax.config.update("jax_enable_x64", True)

from prismslice.simul.atom_potentials import build_kernel_table
from prismslice.simul.dispatch import WorkDispatcher
from prismslice.simul.slicer import (accumulate_slice, compute_potential,
                                     prepare_layout, slice_atoms)
from prismslice.types import (WorkerError, make_atom_list,
                              make_simulation_params)


def _params(positions, cell_z=2.0, thermal_sigma=None, occupancy=None, **overrides):
    positions = jnp.asarray(positions, dtype=jnp.float64)
    count = positions.shape[0]
    atoms = make_atom_list(
        jnp.ones(count, dtype=jnp.int32),
        positions,
        None if thermal_sigma is None else jnp.asarray(thermal_sigma, dtype=jnp.float64),
        None if occupancy is None else jnp.asarray(occupancy, dtype=jnp.float64),
    )
    settings = dict(
        realspace_pixel_size=(0.5, 0.5),
        interpolation_factors=(1, 1),
        num_threads=1,
    )
    settings.update(overrides)
    return make_simulation_params(atoms, (cell_z, 4.0, 4.0), **settings)


def _random_params(count=20, **overrides):
    positions = jax.random.uniform(jax.random.PRNGKey(3), (count, 3), dtype=jnp.float64)
    return _params(positions, cell_z=8.0, **overrides)


class RecordingDispatcher(WorkDispatcher):
    ranges = []
    lock = threading.Lock()

    def get_work(self, batch_size=1):
        work = super().get_work(batch_size)
        if work is not None:
            with self.lock:
                self.ranges.append(work)
        return work


class TestSliceAtoms(chex.TestCase):
    def test_top_down_numbering(self):
        """The tallest atom sits in slice 0."""
        plane, num_planes = slice_atoms(jnp.asarray([0.0, 3.0, 5.4]), 2.0)
        chex.assert_trees_all_equal(plane, jnp.asarray([2, 1, 0], dtype=jnp.int32))
        self.assertEqual(num_planes, 3)

    def test_single_plane(self):
        plane, num_planes = slice_atoms(jnp.asarray([1.0, 1.5, 2.5]), 2.0)
        chex.assert_trees_all_equal(plane, jnp.zeros(3, dtype=jnp.int32))
        self.assertEqual(num_planes, 1)

    def test_partition(self):
        z = jax.random.uniform(jax.random.PRNGKey(0), (200,), dtype=jnp.float64) * 30.0
        plane, num_planes = slice_atoms(z, 1.5)
        self.assertGreaterEqual(int(jnp.min(plane)), 0)
        self.assertLess(int(jnp.max(plane)), num_planes)
        self.assertEqual(int(np.bincount(np.asarray(plane)).sum()), 200)


class TestPrepareLayout(chex.TestCase):
    def test_members_cover_every_atom_once(self):
        params = _random_params()
        kernels = build_kernel_table(params)
        layout = prepare_layout(params, kernels)
        members = np.asarray(layout.members)[np.asarray(layout.valid)]
        self.assertEqual(sorted(members.tolist()), list(range(20)))
        for s in range(layout.num_planes):
            ids = np.asarray(layout.members[s])[np.asarray(layout.valid[s])]
            self.assertTrue(np.all(np.asarray(layout.plane)[ids] == s))

    def test_cartesian_positions(self):
        params = _params([[0.25, 0.5, 0.0]])
        layout = prepare_layout(params, build_kernel_table(params))
        self.assertAlmostEqual(float(layout.x[0]), 1.0)
        self.assertAlmostEqual(float(layout.y[0]), 2.0)
        self.assertEqual(int(layout.species_index[0]), 0)


class TestComputePotential(chex.TestCase):
    def test_single_atom_is_wrapped_kernel(self):
        """An atom at the origin leaves its kernel wrapped around the corners."""
        params = _params([[0.0, 0.0, 0.0]])
        kernels = build_kernel_table(params)
        volume = compute_potential(params)
        chex.assert_shape(volume.slices, (1, 8, 8))

        expected = np.zeros((8, 8))
        kernel = np.asarray(kernels.kernels[0])
        for i, dy in enumerate(np.asarray(kernels.yvec)):
            for j, dx in enumerate(np.asarray(kernels.xvec)):
                expected[dy % 8, dx % 8] += kernel[i, j]
        chex.assert_trees_all_close(volume.slices[0], jnp.asarray(expected), atol=1e-12)

    def test_slice_sums(self):
        params = _params(
            [[0.1, 0.2, 0.0], [0.6, 0.4, 0.5], [0.3, 0.9, 0.9]], cell_z=6.0
        )
        kernels = build_kernel_table(params)
        volume = compute_potential(params)
        chex.assert_shape(volume.slices, (3, 8, 8))
        chex.assert_trees_all_close(
            jnp.sum(volume.slices, axis=(1, 2)),
            jnp.full(3, jnp.sum(kernels.kernels[0])),
            rtol=1e-10,
        )
        self.assertEqual(float(volume.slice_thickness), 2.0)

    @parameterized.parameters((2,), (4,), (7,))
    def test_independent_of_thread_count(self, num_threads):
        sigma = jnp.full(20, 0.3)
        occupancy = jnp.full(20, 0.7)
        settings = dict(
            thermal_sigma=sigma,
            occupancy=occupancy,
            include_thermal_effects=True,
            include_occupancy=True,
            random_seed=11,
        )
        serial = compute_potential(_random_params(num_threads=1, **settings))
        parallel = compute_potential(_random_params(num_threads=num_threads, **settings))
        chex.assert_trees_all_close(serial.slices, parallel.slices, atol=1e-12)

    def test_thermal_reproducible_and_seeded(self):
        sigma = jnp.full(20, 0.5)
        first = compute_potential(
            _random_params(thermal_sigma=sigma, include_thermal_effects=True)
        )
        second = compute_potential(
            _random_params(thermal_sigma=sigma, include_thermal_effects=True)
        )
        reseeded = compute_potential(
            _random_params(
                thermal_sigma=sigma, include_thermal_effects=True, random_seed=1
            )
        )
        chex.assert_trees_all_equal(first.slices, second.slices)
        self.assertFalse(bool(jnp.allclose(first.slices, reseeded.slices)))

    def test_slice_unchanged_by_atoms_added_elsewhere(self):
        """Random draws of a slice follow its atoms, not the layout width."""
        top = [[0.2, 0.3, 0.9], [0.6, 0.6, 0.9]]
        bottom = [[0.5, 0.5, 0.2]]
        extra = [[0.1, 0.8, 0.25], [0.8, 0.1, 0.3], [0.4, 0.4, 0.2]]
        settings = dict(
            cell_z=4.0,
            include_thermal_effects=True,
            include_occupancy=True,
            random_seed=5,
        )
        base = compute_potential(
            _params(
                top + bottom,
                thermal_sigma=[0.4] * 3,
                occupancy=[0.6] * 3,
                **settings,
            )
        )
        grown = compute_potential(
            _params(
                top + bottom + extra,
                thermal_sigma=[0.4] * 6,
                occupancy=[0.6] * 6,
                **settings,
            )
        )
        chex.assert_shape(base.slices, (2, 8, 8))
        chex.assert_shape(grown.slices, (2, 8, 8))
        chex.assert_trees_all_equal(base.slices[0], grown.slices[0])

    def test_zero_occupancy(self):
        positions = [[0.2, 0.2, 0.0], [0.7, 0.7, 0.0]]
        dropped = compute_potential(
            _params(positions, occupancy=[0.0, 0.0], include_occupancy=True)
        )
        kept = compute_potential(_params(positions, occupancy=[0.0, 0.0]))
        chex.assert_trees_all_equal(dropped.slices, jnp.zeros_like(dropped.slices))
        self.assertGreater(float(jnp.sum(kept.slices)), 0.0)

    def test_accumulate_slice_matches_volume(self):
        params = _random_params(num_threads=3)
        kernels = build_kernel_table(params)
        layout = prepare_layout(params, kernels)
        volume = compute_potential(params)
        for s in range(layout.num_planes):
            chex.assert_trees_all_close(
                volume.slices[s], accumulate_slice(s, layout, kernels, params)
            )

    def test_progress_reports_every_slice(self):
        calls = []
        params = _params(
            [[0.1, 0.2, 0.0], [0.6, 0.4, 0.5], [0.3, 0.9, 0.9]],
            cell_z=6.0,
            num_threads=2,
        )
        compute_potential(params, lambda done, total: calls.append((done, total)))
        self.assertLen(calls, 3)
        self.assertEqual(sorted(calls), [(1, 3), (2, 3), (3, 3)])

    def test_each_slice_dispatched_once(self):
        RecordingDispatcher.ranges = []
        params = _random_params(num_threads=4)
        with mock.patch("prismslice.simul.slicer.WorkDispatcher", RecordingDispatcher):
            volume = compute_potential(params)
        covered = sorted(
            index for work in RecordingDispatcher.ranges for index in range(*work)
        )
        self.assertEqual(covered, list(range(volume.slices.shape[0])))

    def test_worker_failure(self):
        params = _random_params(num_threads=2)
        with mock.patch(
            "prismslice.simul.slicer.accumulate_slice",
            side_effect=RuntimeError("slice failed"),
        ):
            with self.assertRaises(WorkerError) as context:
                compute_potential(params)
        self.assertIsInstance(context.exception.__cause__, RuntimeError)
