"""
RNA-seq Differential Expression Pipeline
========================================

Main pipeline script that orchestrates:
1. Data loading and validation
2. Size-factor normalization
3. Dispersion estimation, GLM fitting and hypothesis tests
4. Variance-stabilizing transformation and RLE
5. Sample diagnostics (PCA, covariate correlation)
6. Result summaries and overlaps

Usage:
    python -m rnaseq_de.pipeline --config configs/config.yaml
"""

import argparse
import json
import logging
from datetime import datetime
from pathlib import Path

import pandas as pd

from .config import load_config
from .de_analysis.differential_expression import DEAnalysis, filter_significant
from .exceptions import InputValidationError
from .preprocessing.data_loader import load_counts, load_metadata
from .preprocessing.normalization import SizeFactorNormalizer, drop_all_zero, library_size_summary
from .summary.de_summary import summarize, summarize_comparisons
from .summary.overlap import compute_overlaps
from .transformation.vst import relative_log_expression, rle_summary

logger = logging.getLogger(__name__)


class RNAseqPipeline:
    """Complete differential expression pipeline."""

    def __init__(self, config_path: str):
        """
        Initialize pipeline with configuration.

        Parameters
        ----------
        config_path : str
            Path to YAML configuration file
        """
        self.config = load_config(config_path)

        self.results_dir = Path(self.config.data.output_dir)
        self.results_dir.mkdir(parents=True, exist_ok=True)

        # Initialize containers
        self.counts_raw = None
        self.metadata = None
        self.analysis = None
        self.size_factors = None
        self.de_results = None
        self.transformed = None
        self.rle = None
        self.pca_scores = None
        self.pca_variance = None
        self.covariate_corr = None
        self.summaries = None
        self.overlaps = None

        logger.info(f"Initialized pipeline for: {self.config.project}")

    def step1_load_data(self):
        """Load counts and sample metadata and fix the design."""
        logger.info("=== Step 1: Loading Data ===")

        data = self.config.data
        if data.counts is None or data.metadata is None:
            raise InputValidationError("Configuration must name both a counts and a metadata file")

        self.counts_raw = load_counts(data.counts, sep=data.sep)
        self.metadata = load_metadata(data.metadata, sep=data.sep, sample_col=data.sample_col)

        # Validates counts, metadata and design before any fitting
        self.analysis = DEAnalysis(self.counts_raw, self.metadata, config=self.config)

        return self.counts_raw, self.metadata

    def step2_normalize(self):
        """Estimate size factors and report library sizes and log-CPM."""
        logger.info("=== Step 2: Normalization ===")

        if self.analysis is None:
            self.step1_load_data()

        self.size_factors = self.analysis.estimate_size_factors()

        nonzero, _ = drop_all_zero(self.analysis.counts)
        log_cpm = SizeFactorNormalizer(nonzero).cpm(log=True)
        log_cpm.to_csv(self.results_dir / "log_cpm.csv", index_label='gene')

        self.size_factors.to_frame().to_csv(self.results_dir / "size_factors.csv", index_label='sample')
        library_size_summary(self.analysis.counts, self.size_factors).to_csv(
            self.results_dir / "library_sizes.csv", index=False
        )

        logger.info("Normalization complete")

        return self.size_factors

    def step3_differential_expression(self):
        """Fit every gene and run the configured tests."""
        logger.info("=== Step 3: Differential Expression Analysis ===")

        if self.analysis is None:
            self.step1_load_data()

        self.analysis.run()
        self.size_factors = self.analysis.size_factors
        self.de_results = self.analysis.run_comparisons()

        self.analysis.dispersion.to_frame().to_csv(self.results_dir / "dispersions.csv", index_label='gene')

        for name, result in self.de_results.items():
            output_path = self.results_dir / f"de_{name}.csv"
            result.table.to_csv(output_path, index_label='gene')

        alpha = self.config.testing.alpha
        for name, result in self.de_results.items():
            sig_genes = filter_significant(result, padj_threshold=alpha, log2fc_threshold=1.0)
            logger.info(f"{name}: significant genes (padj<{alpha}, |log2FC|>1): {len(sig_genes)}")

        return self.de_results

    def step4_transform(self):
        """Variance-stabilizing transformation and RLE."""
        logger.info("=== Step 4: Transformation ===")

        if self.analysis is None or self.analysis.fitted is None:
            self.step3_differential_expression()

        self.transformed = self.analysis.vst()
        self.rle = relative_log_expression(self.transformed)

        self.transformed.to_csv(self.results_dir / "vst_counts.csv", index_label='gene')
        rle_summary(self.rle).to_csv(self.results_dir / "rle_summary.csv")

        logger.info(f"Transformation complete ({self.analysis.stabilizer.method})")

        return self.transformed

    def step5_diagnostics(self):
        """PCA and covariate correlation."""
        logger.info("=== Step 5: Sample Diagnostics ===")

        if self.transformed is None:
            self.step4_transform()

        diag_cfg = self.config.diagnostics
        diagnostics = self.analysis.diagnostics(self.transformed)
        self.pca_scores, self.pca_variance = diagnostics.pca(n_top_genes=diag_cfg.n_top_genes)
        self.covariate_corr = diagnostics.covariate_correlation(n_components=diag_cfg.n_components)

        self.pca_scores.to_csv(self.results_dir / "pca_coordinates.csv", index_label='sample')
        self.pca_variance.to_frame().to_csv(self.results_dir / "pca_variance.csv", index_label='component')
        self.covariate_corr.to_csv(self.results_dir / "covariate_correlation.csv", index_label='covariate')

        logger.info(f"\nCovariate correlation:\n{self.covariate_corr.round(2)}")

        return self.covariate_corr

    def step6_summarize(self):
        """Classify genes, count the threshold grid and intersect comparisons."""
        logger.info("=== Step 6: Result Summaries ===")

        if self.de_results is None:
            self.step3_differential_expression()

        alpha = self.config.testing.alpha
        grid = self.config.summary

        self.summaries = {
            name: summarize(result, alpha, grid.lfc_thresholds, grid.padj_thresholds)
            for name, result in self.de_results.items()
        }

        comparison = summarize_comparisons(self.de_results, alpha)
        logger.info(f"\nComparison summary:\n{comparison}")
        comparison.to_csv(self.results_dir / "comparison_summary.csv", index=False)

        if self.summaries:
            labels = pd.concat([s.labels for s in self.summaries.values()], axis=1)
            labels.to_csv(self.results_dir / "de_labels.csv", index_label='gene')

            threshold_counts = pd.concat(
                [s.threshold_counts.assign(comparison=name) for name, s in self.summaries.items()],
                ignore_index=True
            )
            threshold_counts.to_csv(self.results_dir / "threshold_grid.csv", index=False)

        if len(self.de_results) >= 2:
            self.overlaps = compute_overlaps(self.de_results, alpha)
            self.overlaps.pairwise_sizes().to_csv(self.results_dir / "overlap_sizes.csv")
            self.overlaps.membership().to_csv(self.results_dir / "overlap_membership.csv")

        return self.summaries

    def run_full_pipeline(self):
        """Run the complete analysis pipeline."""
        logger.info("="*60)
        logger.info("Starting Differential Expression Pipeline")
        logger.info("="*60)

        start_time = datetime.now()

        self.step1_load_data()
        self.step2_normalize()
        self.step3_differential_expression()
        self.step4_transform()
        self.step5_diagnostics()
        self.step6_summarize()

        end_time = datetime.now()
        duration = end_time - start_time

        logger.info("="*60)
        logger.info(f"Pipeline completed in {duration}")
        logger.info(f"Results saved to: {self.results_dir}")
        logger.info("="*60)

        self._generate_summary_report()

        return self.summaries

    def _generate_summary_report(self):
        """Generate a summary report of the analysis."""
        analysis = self.analysis
        fitted = analysis.fitted if analysis is not None else None

        summary = {
            'project': self.config.project,
            'date': datetime.now().isoformat(),
            'design': {
                'full': analysis.design.full_formula if analysis is not None else None,
                'reduced': analysis.design.reduced_formula if analysis is not None else None
            },
            'data': {
                'genes': self.counts_raw.shape[0] if self.counts_raw is not None else None,
                'samples': self.counts_raw.shape[1] if self.counts_raw is not None else None,
                'fitted_genes': len(fitted.genes) if fitted is not None else None,
                'not_converged': int((~fitted.converged).sum()) if fitted is not None else None
            },
            'dispersion': {
                'trend_kind': analysis.dispersion.trend_kind,
                'trend_coefficients': analysis.dispersion.trend_coefficients
            } if analysis is not None and analysis.dispersion is not None else None,
            'transformation': analysis.stabilizer.method
            if analysis is not None and analysis.stabilizer is not None else None,
            'de_analysis': {
                name: s.counts() for name, s in self.summaries.items()
            } if self.summaries is not None else None,
            'overlap': {
                'all_comparisons': len(self.overlaps.intersection)
            } if self.overlaps is not None else None
        }

        with open(self.results_dir / "pipeline_summary.json", 'w') as f:
            json.dump(summary, f, indent=2, default=str)


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description='RNA-seq Differential Expression Pipeline')
    parser.add_argument(
        '--config',
        type=str,
        default='configs/config.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--step',
        type=str,
        choices=['all', 'load', 'normalize', 'de', 'transform', 'diagnostics', 'summary'],
        default='all',
        help='Pipeline step to run'
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    pipeline = RNAseqPipeline(args.config)

    # Run requested step
    if args.step == 'all':
        pipeline.run_full_pipeline()
    elif args.step == 'load':
        pipeline.step1_load_data()
    elif args.step == 'normalize':
        pipeline.step2_normalize()
    elif args.step == 'de':
        pipeline.step3_differential_expression()
    elif args.step == 'transform':
        pipeline.step4_transform()
    elif args.step == 'diagnostics':
        pipeline.step5_diagnostics()
    elif args.step == 'summary':
        pipeline.step6_summarize()


if __name__ == "__main__":
    main()
