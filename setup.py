from setuptools import setup, find_packages


core_dependencies = [
    'numpy',
    'pandas',
    'scipy',
    'pysam',
    'pybedtools',
    'pyyaml',
    'tqdm',
]

optional_feature_dependencies = {
    'pytest': ['pytest'],
}

all_dependencies = core_dependencies + \
    sum(optional_feature_dependencies.values(), [])

long_description = "strandstate: HMM-based classification of genomic bins of single-cell Strand-seq data into CC, WC and WW strand states."

setup(
    name='strandstate',
    version='0.1.0',
    description='strandstate',
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    include_package_data=True,
    classifiers=[
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
    ],
    keywords='genomics,strand-seq,single-cell,hidden-markov-model,structural-variation',
    install_requires=core_dependencies,
    extras_require=optional_feature_dependencies,
    entry_points={
        'console_scripts': [
            'strandstate = strandstate.strandstate:main'
        ]
    },
)
