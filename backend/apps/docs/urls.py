"""
URL configuration for the docs app.
"""
from django.urls import path
from . import views

app_name = 'docs'

urlpatterns = [
    path('', views.documents, name='collection'),
    path('reprocess', views.reprocess_documents, name='reprocess'),
    path('scrape', views.scrape_document, name='scrape'),
    path('<uuid:document_id>', views.delete_document, name='delete'),
    path('<uuid:document_id>/ingest', views.ingest_document, name='ingest'),
    path('<uuid:document_id>/chunks/<int:chunk_index>', views.get_chunk, name='chunk'),
]
