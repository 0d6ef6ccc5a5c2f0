"""Tests for the single atom potential kernels and the kernel table."""

import chex
import jax
import jax.numpy as jnp
from absl.testing import parameterized

jax.config.update("jax_enable_x64", True)

from prismslice.simul.atom_potentials import (bessel_k0,
                                              build_kernel_table,
                                              kernel_support,
                                              projected_potential,
                                              projected_potential_3d)
from prismslice.types import (ConfigurationError, make_atom_list,
                              make_simulation_params)


def _params(atomic_numbers, **overrides):
    count = len(atomic_numbers)
    atoms = make_atom_list(
        jnp.asarray(atomic_numbers, dtype=jnp.int32),
        jnp.zeros((count, 3), dtype=jnp.float64),
    )
    settings = dict(
        realspace_pixel_size=(0.5, 0.5),
        interpolation_factors=(1, 1),
        num_threads=1,
    )
    settings.update(overrides)
    return make_simulation_params(atoms, (2.0, 4.0, 4.0), **settings)


class TestBesselK0(chex.TestCase):
    """Test suite for the bessel_k0 function."""

    @chex.variants(with_jit=True, without_jit=True)
    @parameterized.parameters(
        (0.1, 2.4270690),
        (0.2, 1.7527039),
        (0.5, 0.9244191),
        (1.0, 0.4210244),
        (1.5, 0.2138056),
        (2.0, 0.1138939),
        (3.0, 0.0347395),
        (5.0, 0.0036911),
        (10.0, 0.0000178),
    )
    def test_bessel_k0_accuracy(self, x, expected):
        """Test K_0(x) against tabulated values on both sides of x = 2."""
        x_array = jnp.asarray(x, dtype=jnp.float64)
        k0_computed = self.variant(bessel_k0)(x_array)
        self.assertAlmostEqual(
            float(k0_computed),
            expected,
            delta=1e-6,
            msg=f"K_0({x}) = {float(k0_computed):.8f}, expected {expected:.8f}",
        )

    @chex.variants(with_jit=True, without_jit=True)
    def test_bessel_k0_continuous_at_switch(self):
        """The two approximations agree where they meet."""
        below = self.variant(bessel_k0)(jnp.asarray([2.0 - 1e-9], dtype=jnp.float64))
        above = self.variant(bessel_k0)(jnp.asarray([2.0 + 1e-9], dtype=jnp.float64))
        chex.assert_trees_all_close(below, above, atol=1e-6)

    def test_bessel_k0_decreasing(self):
        x = jnp.linspace(0.05, 8.0, 200)
        values = bessel_k0(x)
        self.assertTrue(bool(jnp.all(jnp.diff(values) < 0)))


class TestProjectedPotential(chex.TestCase):
    """Test suite for the 2-D projected potential kernel."""

    def setUp(self):
        super().setUp()
        self.xr = jnp.arange(-10, 11, dtype=jnp.float64) * 0.1
        self.yr = jnp.arange(-8, 9, dtype=jnp.float64) * 0.1

    @parameterized.parameters((1,), (2,), (3,), (14,), (79,), (103,))
    def test_non_negative_with_null_boundary(self, atomic_number):
        """Kernel minimum is zero and its outer rows and columns vanish."""
        kernel = projected_potential(atomic_number, self.xr, self.yr)
        chex.assert_shape(kernel, (17, 21))
        self.assertEqual(float(jnp.min(kernel)), 0.0)
        chex.assert_trees_all_close(kernel[0, :], jnp.zeros(21), atol=1e-12)
        chex.assert_trees_all_close(kernel[-1, :], jnp.zeros(21), atol=1e-12)
        chex.assert_trees_all_close(kernel[:, 0], jnp.zeros(17), atol=1e-12)
        chex.assert_trees_all_close(kernel[:, -1], jnp.zeros(17), atol=1e-12)

    def test_peak_at_origin(self):
        kernel = projected_potential(1, self.xr, self.yr)
        self.assertGreater(float(kernel[8, 10]), 0.0)
        self.assertEqual(int(jnp.argmax(kernel)), 8 * 21 + 10)

    def test_symmetric(self):
        """Kernel is mirror symmetric about its centre on both axes."""
        kernel = projected_potential(1, self.xr, self.yr)
        chex.assert_trees_all_close(kernel, kernel[::-1, :], rtol=1e-10, atol=1e-12)
        chex.assert_trees_all_close(kernel, kernel[:, ::-1], rtol=1e-10, atol=1e-12)

    def test_deterministic(self):
        first = projected_potential(2, self.xr, self.yr)
        second = projected_potential(2, self.xr, self.yr)
        chex.assert_trees_all_equal(first, second)

    def test_unknown_species(self):
        """Elements beyond the parameter table are configuration errors."""
        with self.assertRaises(ConfigurationError):
            projected_potential(104, self.xr, self.yr)

    def test_too_short_support(self):
        with self.assertRaises(ConfigurationError):
            projected_potential(1, jnp.asarray([-0.1, 0.1]), self.yr)


class TestProjectedPotential3D(chex.TestCase):
    """Test suite for the 3-D potential kernel."""

    def setUp(self):
        super().setUp()
        self.coords = jnp.arange(-4, 5, dtype=jnp.float64) * 0.1

    def test_non_negative_with_null_faces(self):
        kernel = projected_potential_3d(1, self.coords, self.coords, self.coords)
        chex.assert_shape(kernel, (9, 9, 9))
        self.assertEqual(float(jnp.min(kernel)), 0.0)
        zeros = jnp.zeros((9, 9))
        for face in (
            kernel[0],
            kernel[-1],
            kernel[:, 0],
            kernel[:, -1],
            kernel[:, :, 0],
            kernel[:, :, -1],
        ):
            chex.assert_trees_all_close(face, zeros, atol=1e-4)

    def test_peak_at_origin(self):
        kernel = projected_potential_3d(1, self.coords, self.coords, self.coords)
        self.assertEqual(int(jnp.argmax(kernel)), 4 * 81 + 4 * 9 + 4)


class TestKernelTable(chex.TestCase):
    """Test suite for kernel_support and build_kernel_table."""

    @parameterized.parameters(
        (1.0, 0.5, 5),
        (1.0, 0.1, 21),
        (1.0, 0.3, 9),
    )
    def test_kernel_support(self, bound, pixel, expected_size):
        xvec, yvec = kernel_support(bound, jnp.asarray([pixel, pixel]))
        self.assertEqual(xvec.shape[0], expected_size)
        self.assertEqual(yvec.shape[0], expected_size)
        self.assertEqual(int(xvec[0]), -int(xvec[-1]))

    def test_one_kernel_per_species_sorted(self):
        params = _params([3, 1, 3, 1, 2])
        table = build_kernel_table(params)
        chex.assert_trees_all_equal(table.atomic_numbers, jnp.asarray([1, 2, 3]))
        chex.assert_shape(table.kernels, (3, 5, 5))
        self.assertTrue(bool(jnp.all(table.kernels >= 0)))

    def test_matches_projected_potential(self):
        params = _params([1])
        table = build_kernel_table(params)
        xr = table.xvec * params.pixel_size[1]
        yr = table.yvec * params.pixel_size[0]
        chex.assert_trees_all_close(table.kernels[0], projected_potential(1, xr, yr))

    def test_integrated_3d_kernels(self):
        params = _params([1], potential_3d=True)
        table = build_kernel_table(params)
        chex.assert_shape(table.kernels, (1, 5, 5))
        self.assertTrue(bool(jnp.all(table.kernels >= 0)))
        self.assertGreater(float(table.kernels[0, 2, 2]), 0.0)

    def test_silicon_kernel(self):
        """A Z > 3 kernel from the packaged table: non-negative, null edges."""
        params = _params([14], realspace_pixel_size=(0.1, 0.1), interpolation_factors=(5, 5))
        table = build_kernel_table(params)
        chex.assert_trees_all_equal(table.atomic_numbers, jnp.asarray([14]))
        chex.assert_shape(table.kernels, (1, 21, 21))
        kernel = table.kernels[0]
        self.assertEqual(float(jnp.min(kernel)), 0.0)
        self.assertEqual(int(jnp.argmax(kernel)), 10 * 21 + 10)
        chex.assert_trees_all_close(kernel[0, :], jnp.zeros(21), atol=1e-12)
        chex.assert_trees_all_close(kernel[:, -1], jnp.zeros(21), atol=1e-12)
        hydrogen = build_kernel_table(
            _params([1], realspace_pixel_size=(0.1, 0.1), interpolation_factors=(5, 5))
        )
        self.assertGreater(float(kernel[10, 10]), float(hydrogen.kernels[0, 10, 10]))

    def test_unknown_species(self):
        params = _params([1, 50])
        atoms = make_atom_list(
            jnp.asarray([1, 104], dtype=jnp.int32), jnp.zeros((2, 3), dtype=jnp.float64)
        )
        with self.assertRaises(ConfigurationError):
            build_kernel_table(params._replace(atoms=atoms))
