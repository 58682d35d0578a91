from setuptools import setup

setup(
    name='resgraph',
    version='0.3',
    py_modules=['resgraph'],
    packages=['planner', 'planner.config'],
    install_requires=[
        'Click',
        'python-hcl2',
        'GitPython',
        'graphviz',
        'PyYAML',
        'tqdm'
    ],
    extras_require={
        'test': ['pytest']
    },
    entry_points='''
        [console_scripts]
        resgraph=resgraph:cli
    ''',
)
