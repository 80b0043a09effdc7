"""Detect jet-to-parton permutations that give the same likelihood.

Permutations of n jets are numbered in lexicographic order, i.e. in the order
of ``itertools.permutations(range(n))``. The first positions of a permutation
are the roles of the likelihood (hadronic b, leptonic b, light quark 1,
light quark 2); the remaining jets are unassigned.
"""
import dataclasses
import math
import typing as ty

import topfit
export, __all__ = topfit.exporter()


@export
def permutation_from_index(index, n):
    """Return the index'th lexicographic permutation of range(n), as a tuple"""
    if not 0 <= index < math.factorial(n):
        raise ValueError(f"No permutation {index} of {n} objects")
    pool = list(range(n))
    result = []
    for k in range(n - 1, -1, -1):
        position, index = divmod(index, math.factorial(k))
        result.append(pool.pop(position))
    return tuple(result)


@export
def permutation_index(permutation):
    """Return lexicographic index of a permutation of range(n)"""
    pool = sorted(permutation)
    if pool != list(range(len(permutation))):
        raise ValueError(f"{permutation} is not a permutation of range(n)")
    index = 0
    for k, obj in enumerate(permutation):
        position = pool.index(obj)
        index += position * math.factorial(len(permutation) - 1 - k)
        pool.pop(position)
    return index


@export
@dataclasses.dataclass(frozen=True)
class PermutationFilter:
    """Finds the partner of a permutation under exchange of two roles.

    Arguments:
        swap: pair of role positions whose exchange leaves the likelihood
            unchanged, or None if there is no such symmetry.
            Default is the two light quarks of the lepton+jets likelihood.
    """

    swap: ty.Optional[tuple] = (2, 3)

    def partner_of(self, index, n_permutations):
        """Return index of the permutation with the swapped roles exchanged,
        or None if there is no symmetry.
        """
        n = topfit.n_objects_for_permutations(n_permutations)
        permutation = list(permutation_from_index(index, n))
        if self.swap is None:
            return None
        i, j = self.swap
        if max(i, j) >= n:
            raise ValueError(
                f"Can't swap positions {self.swap} in permutations of {n} objects")
        permutation[i], permutation[j] = permutation[j], permutation[i]
        return permutation_index(permutation)

    def unique(self, n_permutations, progress=False):
        """Yield permutation indices, skipping the higher index of
        each pair of partners.
        """
        for index in topfit.tqdm_maybe(progress)(
                range(n_permutations), desc='Permutations'):
            partner = self.partner_of(index, n_permutations)
            if partner is None or partner > index:
                yield index
