from setuptools import setup, find_packages


setup(
    name='torch_dla',
    version='0.1.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=[
        'torch>=2.0.0',
        'numpy',
        'scipy',
    ],
    extras_require={
        'test': ['pytest'],
    }
)
