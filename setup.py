from setuptools import setup, find_packages

setup(
    name='cpmm-market-engine',
    version='0.1.0',
    packages=find_packages(include=['market_engine', 'market_engine.*']),
    install_requires=[
        'mpmath',
        'numpy',
        'python-dotenv',
        'typing_extensions',
    ],
    extras_require={
        'test': ['pytest'],
    },
    description='Deterministic CPMM prediction-market engine: pricing, limit order matching, multi-answer arbitrage and resolution payouts.',
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Operating System :: OS Independent',
    ],
    python_requires='>=3.11',
)
