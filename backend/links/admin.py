"""
Django Admin Configuration for Links Models

Derived fields are read-only everywhere: only the engine writes score,
comment_count and karma. Votes and karma events cannot be touched at all.
"""
from django.contrib import admin
from .models import Profile, Link, Comment, Vote, KarmaEvent


class ReadOnlyAdmin(admin.ModelAdmin):
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Profile)
class ProfileAdmin(admin.ModelAdmin):
    list_display = ['user', 'display_name', 'karma']
    search_fields = ['user__username', 'display_name']
    readonly_fields = ['karma']


@admin.register(Link)
class LinkAdmin(admin.ModelAdmin):
    list_display = ['title', 'author', 'score', 'comment_count', 'created_at']
    list_filter = ['created_at']
    search_fields = ['title', 'url', 'author__username']
    readonly_fields = ['score', 'comment_count', 'created_at']


@admin.register(Comment)
class CommentAdmin(admin.ModelAdmin):
    list_display = ['id', 'link', 'author', 'parent', 'score', 'created_at']
    list_filter = ['created_at']
    search_fields = ['content', 'author__username']
    readonly_fields = ['link', 'parent', 'score', 'created_at']


@admin.register(Vote)
class VoteAdmin(ReadOnlyAdmin):
    list_display = ['voter', 'votable_type', 'votable_id', 'value', 'updated_at']
    list_filter = ['votable_type', 'value']
    search_fields = ['voter__username']


@admin.register(KarmaEvent)
class KarmaEventAdmin(ReadOnlyAdmin):
    list_display = ['recipient', 'actor', 'event_type', 'karma_delta', 'created_at']
    list_filter = ['event_type', 'created_at']
    search_fields = ['recipient__username', 'actor__username']
