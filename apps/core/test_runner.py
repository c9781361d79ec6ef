import logging

from django.apps import apps
from django.test.runner import DiscoverRunner


class InstalledAppsOnlyDiscoverRunner(DiscoverRunner):
    """Run the project apps' tests only, with service logging kept quiet."""

    def setup_test_environment(self, **kwargs):
        super().setup_test_environment(**kwargs)
        if self.verbosity < 2:
            logging.getLogger('apps').setLevel(logging.CRITICAL)

    def build_suite(self, test_labels=None, **kwargs):
        if not test_labels:
            test_labels = [
                app_config.name
                for app_config in apps.get_app_configs()
                if app_config.name.startswith('apps.')
            ]
        return super().build_suite(test_labels=test_labels, **kwargs)
