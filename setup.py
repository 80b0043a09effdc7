import setuptools

with open('README.md') as file:
    readme = file.read()

with open('HISTORY.md') as file:
    history = file.read()

def get_requirements(path='requirements.txt', strict=False):
    """Return a list of requirements from a requirements file.

    Arguments:
     - strict: If False, strip version tags
    """
    with open(path, mode='r') as f:
        requirements = f.read().splitlines()
    if not strict:
        requirements = [x.split('==')[0] for x in requirements]
    return requirements

requirements = get_requirements()
requirements_strict = get_requirements(strict=True)

setuptools.setup(
    name='topfit',
    version='0.1.0',
    description='Kinematic likelihood for top quark pairs in lepton+jets events',
    author='Jelle Aalbers',
    python_requires=">=3.10",
    include_package_data=True,
    install_requires=requirements,
    extras_require={
        'test': ['pytest', 'scipy'],
        'strict-deps': requirements_strict,
    },
    long_description=readme + '\n\n' + history,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=['tests']),
    classifiers=[
        'Development Status :: 2 - Pre-Alpha',
        'License :: OSI Approved :: BSD License',
        'Natural Language :: English',
        'Programming Language :: Python :: 3.10',
        'Intended Audience :: Science/Research',
        'Programming Language :: Python :: Implementation :: CPython',
        'Topic :: Scientific/Engineering :: Physics'],
    zip_safe=False)
