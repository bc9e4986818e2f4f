from setuptools import setup, find_packages

setup(
    name='cpc',
    version='0.1.0',
    packages=find_packages(exclude=['cpc.tests']),
    include_package_data=True,
    install_requires=[
        'typer[all]',
        'rich',
        'kubernetes',
        'ansible',
        'ansible-runner',
        'python-dotenv',
        'requests',
        'pyyaml',
        'jsonschema',
        'pydantic>=2',
        'paramiko',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'cpc=cpc.cli:app'
        ]
    },
    description='Operator CLI that provisions and maintains a self-hosted Kubernetes cluster',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.9',
)
