from django.apps import AppConfig


####################################################################
#
class RspamdFilterConfig(AppConfig):
    name = "rspamd_filter"
    verbose_name = "OpenSMTPD rspamd filter"
