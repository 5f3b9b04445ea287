from setuptools import setup, find_packages
import os
import shutil
from glob import glob

package_name = 'kino_replan'

try:
    from setuptools.command.install_data import install_data  # type: ignore
except ImportError:  # pragma: no cover
    install_data = None  # type: ignore


cmdclass = {}


if install_data is not None:
    class symlink_data(install_data):  # noqa: N801
        """Like colcon's symlink_data, but handle new/changed files with --force."""

        def copy_file(self, src, dst, **kwargs):  # noqa: D102
            if kwargs.get('link'):
                return super().copy_file(src, dst, **kwargs)

            if os.path.isdir(dst):
                target = os.path.join(dst, os.path.basename(src))
            else:
                target = dst
            if os.path.lexists(target):
                if os.path.isdir(target) and not os.path.islink(target):
                    shutil.rmtree(target)
                else:
                    os.remove(target)

            kwargs['link'] = 'sym'
            src = os.path.abspath(src)
            return super().copy_file(src, dst, **kwargs)

    cmdclass['symlink_data'] = symlink_data


setup(
    name=package_name,
    version='0.1.0',
    packages=find_packages(exclude=['tests', 'tests.*']),
    data_files=[
        ('share/ament_index/resource_index/packages', ['resource/' + package_name]),
        ('share/' + package_name, ['package.xml']),
        (os.path.join('share', package_name, 'config'), glob('config/*.yaml')),
        (os.path.join('share', package_name, 'launch'), glob('launch/*.py')),
    ],
    install_requires=['setuptools', 'numpy', 'scipy', 'pyyaml'],
    extras_require={
        'test': ['pytest'],
    },
    zip_safe=True,
    maintainer='Aerial Planning Team',
    maintainer_email='planning@example.com',
    description='Kinodynamic replanning FSM with goal safety recovery',
    license='MIT',
    python_requires='>=3.8',
    tests_require=['pytest'],
    cmdclass=cmdclass,
    entry_points={
        'console_scripts': [
            'replan_fsm_node = kino_replan.nodes.replan_fsm_node:main',
        ],
    },
)
