import math

from tqdm import tqdm


def exporter(export_self=False):
    """Export utility modified from https://stackoverflow.com/a/41895194
    Returns export decorator, __all__ list
    """
    all_ = []
    if export_self:
        all_.append('exporter')

    def decorator(obj):
        all_.append(obj.__name__)
        return obj

    return decorator, all_


export, __all__ = exporter(export_self=True)


@export
def tqdm_maybe(progress=False):
    return tqdm if progress else lambda x, **kwargs: x


@export
def n_objects_for_permutations(n_permutations):
    """Return n such that n! == n_permutations

    Raises ValueError if n_permutations is not the factorial of some n >= 2.
    """
    n = 2
    while math.factorial(n) < n_permutations:
        n += 1
    if math.factorial(n) != n_permutations:
        raise ValueError(
            f"{n_permutations} is not the number of permutations "
            "of any set of two or more objects")
    return n
