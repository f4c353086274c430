from setuptools import find_packages, setup

setup(
    name="jaxlm",
    version="0.0.1",
    description="Levenberg-Marquardt on factor graphs, with SO(4), in Jax",
    url="http://github.com/brentyi/jaxlm",
    author="brentyi",
    author_email="brentyi@berkeley.edu",
    license="BSD",
    packages=find_packages("src"),
    package_dir={"": "src"},
    package_data={"jaxlm": ["py.typed"]},
    python_requires=">=3.11",
    install_requires=[
        "tyro",
        "jax>=0.4.25",
        "jaxlib",
        "jaxlie>=1.3.0",
        "jax_dataclasses>=1.6.0",
        "numpy",
        "scipy",
        "loguru",
        "overrides",
        "termcolor",
    ],
    extras_require={
        "cholmod": [
            "scikit-sparse",
        ],
        "testing": [
            "pytest",
            "pytest-cov",
        ],
        "type-checking": [
            "mypy",
            "types-termcolor",
        ],
    },
)
