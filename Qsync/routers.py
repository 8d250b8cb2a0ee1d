from django.conf import settings


class HisRouter:
    """Keep the legacy HIS database out of every migration run.

    The HIS schema belongs to the hospital system; the bridge only issues raw
    read queries against it through ``connections[settings.HIS_DATABASE_ALIAS]``.
    """

    def allow_migrate(self, db, app_label, model_name=None, **hints):
        if db == settings.HIS_DATABASE_ALIAS:
            return False
        return None
